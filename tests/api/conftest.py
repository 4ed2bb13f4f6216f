"""Fixtures for API tests."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import pytest
from fastapi.testclient import TestClient

from api_helpers import build_settings
from ucp_merchant.infrastructure.payments.simulator import SimulatedPaymentHandler
from ucp_merchant.main import create_app


@pytest.fixture
def make_client(simulator: SimulatedPaymentHandler) -> Callable[..., Any]:
    """Build a TestClient for an app with the given settings overrides.

    Every app shares the ``simulator`` fixture as its payment handler.
    """

    @contextmanager
    def _make(**overrides: Any) -> Iterator[TestClient]:
        app = create_app(build_settings(**overrides), payment_handler=simulator)
        with TestClient(app) as client:
            yield client

    return _make


@pytest.fixture
def client(make_client) -> Iterator[TestClient]:
    with make_client() as client:
        yield client
