"""Tests for the idempotency, rate limit and signature middleware."""

import asyncio
import json
import time

import httpx
import pytest

from api_helpers import CART, READY_COMMANDS, build_settings, create_ready_session
from ucp_merchant.application.signature_service import RequestSignatureVerifier
from ucp_merchant.main import create_app


class TestIdempotencyMiddleware:
    """Tests for Idempotency-Key handling."""

    def test_complete_replayed_byte_identical(self, client, simulator) -> None:
        """A retried completion replays the stored bytes without charging again."""
        session = create_ready_session(client)
        headers = {"Idempotency-Key": "complete-1"}

        first = client.post(f"/checkout/{session['id']}/complete", headers=headers)
        second = client.post(f"/checkout/{session['id']}/complete", headers=headers)

        assert first.status_code == second.status_code == 200
        assert second.content == first.content
        assert second.headers["X-Idempotent-Replayed"] == "true"
        assert "X-Idempotent-Replayed" not in first.headers
        assert simulator.call_count("create_payment_intent") == 1
        assert simulator.call_count("capture_payment") == 1

    def test_create_replayed(self, client) -> None:
        """A retried create returns the same session."""
        headers = {"Idempotency-Key": "create-1"}
        first = client.post("/checkout", json={"cart": CART}, headers=headers)
        second = client.post("/checkout", json={"cart": CART}, headers=headers)

        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]
        assert len(client.get("/checkout").json()["items"]) == 1

    def test_key_reuse_with_different_body(self, client) -> None:
        """Reusing a key for another request is a conflict."""
        headers = {"Idempotency-Key": "create-1"}
        client.post("/checkout", json={"cart": CART}, headers=headers)
        response = client.post("/checkout", json={"cart": CART, "metadata": {"x": "y"}}, headers=headers)

        assert response.status_code == 409
        assert response.json()["error_code"] == "IDEMPOTENCY_CONFLICT"

    def test_errors_are_replayed(self, client) -> None:
        """Client errors are stored like successes."""
        headers = {"Idempotency-Key": "missing-1"}
        first = client.post("/checkout/missing/cancel", headers=headers)
        second = client.post("/checkout/missing/cancel", headers=headers)

        assert first.status_code == second.status_code == 404
        assert second.headers["X-Idempotent-Replayed"] == "true"

    def test_key_required(self, make_client) -> None:
        """With idempotency_required a key must be sent."""
        with make_client(idempotency_required=True) as client:
            response = client.post("/checkout", json={"cart": CART})
            assert response.status_code == 400
            assert response.json()["error_code"] == "IDEMPOTENCY_KEY_REQUIRED"

            assert client.get("/checkout").status_code == 200

    def test_key_too_long(self, client) -> None:
        """Overlong keys are rejected."""
        response = client.post("/checkout", json={"cart": CART}, headers={"Idempotency-Key": "k" * 256})
        assert response.status_code == 400

    def test_failed_store_releases_key(self, client, monkeypatch) -> None:
        """If the response cannot be stored the key stays retryable."""
        service = client.app.state.container.idempotency_service
        headers = {"Idempotency-Key": "create-1"}

        async def broken_store(*args, **kwargs):
            raise RuntimeError("cache unavailable")

        monkeypatch.setattr(service, "store", broken_store)
        with pytest.raises(RuntimeError):
            client.post("/checkout", json={"cart": CART}, headers=headers)
        monkeypatch.undo()

        assert service.backend.get_reservation("create-1") is None
        retry = client.post("/checkout", json={"cart": CART}, headers=headers)
        assert retry.status_code == 201
        assert "X-Idempotent-Replayed" not in retry.headers

    @pytest.mark.asyncio
    async def test_cancelled_request_releases_key(self, simulator) -> None:
        """A request cancelled mid-flight does not block retries with its key."""
        app = create_app(build_settings(), payment_handler=simulator)
        container = app.state.container
        await container.startup()
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://merchant") as http:
            response = await http.post("/checkout", json={"cart": CART})
            session_id = response.json()["id"]
            await http.patch(f"/checkout/{session_id}", json=READY_COMMANDS)
            headers = {"Idempotency-Key": "complete-1"}

            simulator.latency_seconds = 1.0
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(http.post(f"/checkout/{session_id}/complete", headers=headers), 0.1)
            simulator.latency_seconds = 0.0

            assert container.idempotency_service.backend.get_reservation("complete-1") is None
            retry = await asyncio.wait_for(http.post(f"/checkout/{session_id}/complete", headers=headers), 5)

        assert retry.status_code == 200
        assert retry.json()["order"]["status"] == "CONFIRMED"
        assert "X-Idempotent-Replayed" not in retry.headers
        await container.shutdown()


class TestRateLimitMiddleware:
    """Tests for fixed-window rate limiting."""

    def test_limit_exceeded(self, make_client) -> None:
        """The request over the limit gets 429 with Retry-After."""
        with make_client(rate_limit_enabled=True, rate_limit_requests=2, rate_limit_window_seconds=60) as client:
            assert client.get("/checkout").status_code == 200
            second = client.get("/checkout")
            third = client.get("/checkout")

        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status_code == 429
        assert third.json()["error_code"] == "RATE_LIMITED"
        assert int(third.headers["Retry-After"]) >= 1
        assert third.headers["X-RateLimit-Limit"] == "2"

    def test_health_exempt(self, make_client) -> None:
        """Health checks are never limited."""
        with make_client(rate_limit_enabled=True, rate_limit_requests=1) as client:
            assert all(client.get("/health").status_code == 200 for _ in range(3))

    def test_clients_limited_separately_behind_trusted_proxy(self, make_client) -> None:
        """Behind a trusted proxy, clients are keyed by X-Forwarded-For."""
        with make_client(
            rate_limit_enabled=True,
            rate_limit_requests=1,
            rate_limit_trust_forwarded_for=True,
        ) as client:
            assert client.get("/checkout", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
            assert client.get("/checkout", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200
            assert client.get("/checkout", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429

    def test_forwarded_for_ignored_by_default(self, make_client) -> None:
        """Rotating X-Forwarded-For does not escape the limit."""
        with make_client(rate_limit_enabled=True, rate_limit_requests=1) as client:
            assert client.get("/checkout", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
            response = client.get("/checkout", headers={"X-Forwarded-For": "10.0.0.2"})
        assert response.status_code == 429


class TestSignatureMiddleware:
    """Tests for request signature verification."""

    SECRET = "test-signing-secret"

    def _signed(self, body: bytes, secret: str | None = None) -> dict[str, str]:
        ts = str(int(time.time()))
        signature = RequestSignatureVerifier(secret or self.SECRET).sign(ts, body)
        return {
            "UCP-Timestamp": ts,
            "UCP-Signature": signature,
            "Content-Type": "application/json",
        }

    def test_signed_request_accepted(self, make_client) -> None:
        """A correctly signed request passes."""
        body = json.dumps({"cart": CART}).encode()
        with make_client(signature_enabled=True, signature_secret=self.SECRET) as client:
            response = client.post("/checkout", content=body, headers=self._signed(body))
        assert response.status_code == 201

    def test_unsigned_request_rejected(self, make_client) -> None:
        """Mutating requests without a signature get 401."""
        with make_client(signature_enabled=True, signature_secret=self.SECRET) as client:
            response = client.post("/checkout", json={"cart": CART})
        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTH_ERROR"

    def test_tampered_body_rejected(self, make_client) -> None:
        """A body that differs from the signed one is rejected."""
        body = json.dumps({"cart": CART}).encode()
        headers = self._signed(body)
        tampered = body.replace(b'"quantity": 2', b'"quantity": 3')
        with make_client(signature_enabled=True, signature_secret=self.SECRET) as client:
            response = client.post("/checkout", content=tampered, headers=headers)
        assert response.status_code == 401

    def test_reads_not_signed(self, make_client) -> None:
        """GET requests do not need a signature."""
        with make_client(signature_enabled=True, signature_secret=self.SECRET) as client:
            assert client.get("/checkout").status_code == 200
