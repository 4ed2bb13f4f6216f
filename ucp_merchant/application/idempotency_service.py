"""Idempotency service for safe request retries.

Provides:
- Idempotency key reservation (one execution per key)
- Response caching of the exact bytes sent to the client
- Request fingerprinting for conflict detection

A key is reserved before the request executes. Concurrent requests with
the same key wait for the first one to finish and then replay its stored
response. When the first execution ends with a server error, raises or
is cancelled, the reservation is released without storing anything, so
the client may retry. Expired responses are swept as part of normal
reads and writes.
"""

import asyncio
import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from ucp_merchant.domain.base import utc_now

logger = structlog.get_logger()


@dataclass
class CachedResponse:
    """A cached response for an idempotent request.

    Attributes:
        idempotency_key: The idempotency key.
        method: HTTP method.
        path: Request path.
        fingerprint: Hash of method, path and body of the original request.
        status_code: HTTP status code.
        body: Raw response body.
        media_type: Response content type.
        headers: Extra response headers worth replaying.
        created_at: When the response was cached.
        expires_at: When the cached response expires.
    """

    idempotency_key: str
    method: str
    path: str
    fingerprint: str
    status_code: int
    body: bytes
    media_type: str | None
    headers: dict[str, str]
    created_at: datetime
    expires_at: datetime


@dataclass
class IdempotencyResult:
    """Result of an idempotency check.

    Attributes:
        is_cached: A stored response should be replayed.
        cached_response: The stored response if found.
        is_conflict: The key was used for a different request.
        conflict_message: Explanation for the conflict.
        reserved: The caller now owns the key and must ``store`` or ``release``.
    """

    is_cached: bool
    cached_response: CachedResponse | None = None
    is_conflict: bool = False
    conflict_message: str | None = None
    reserved: bool = False


@dataclass
class _Reservation:
    fingerprint: str
    done: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryIdempotencyStore:
    """In-memory store for idempotent responses and in-flight reservations."""

    def __init__(
        self,
        ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = utc_now,
        sweep_interval_seconds: int = 60,
    ) -> None:
        """Initialize store.

        Args:
            ttl_seconds: Time-to-live for cached responses.
            clock: Source of the current time.
            sweep_interval_seconds: Minimum time between sweeps of expired
                responses, run as part of normal reads and writes.
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._next_sweep = clock() + self._sweep_interval
        self._responses: dict[str, CachedResponse] = {}
        self._in_flight: dict[str, _Reservation] = {}

    def now(self) -> datetime:
        return self._clock()

    def _sweep_if_due(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        removed = self.cleanup_expired()
        if removed:
            logger.debug("Swept expired idempotent responses", removed=removed)

    def get(self, idempotency_key: str) -> CachedResponse | None:
        self._sweep_if_due()
        cached = self._responses.get(idempotency_key)
        if cached is None:
            return None

        # Check expiration
        if self._clock() >= cached.expires_at:
            del self._responses[idempotency_key]
            return None

        return cached

    def get_reservation(self, idempotency_key: str) -> _Reservation | None:
        return self._in_flight.get(idempotency_key)

    def reserve(self, idempotency_key: str, fingerprint: str) -> None:
        self._in_flight[idempotency_key] = _Reservation(fingerprint=fingerprint)

    def put(self, response: CachedResponse) -> None:
        self._sweep_if_due()
        self._responses[response.idempotency_key] = response

    def release(self, idempotency_key: str) -> None:
        reservation = self._in_flight.pop(idempotency_key, None)
        if reservation is not None:
            reservation.done.set()

    def cleanup_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired_keys = [key for key, cached in self._responses.items() if now >= cached.expires_at]
        for key in expired_keys:
            del self._responses[key]
        return len(expired_keys)

    def clear(self) -> None:
        for key in list(self._in_flight):
            self.release(key)
        self._responses.clear()

    def __len__(self) -> int:
        return len(self._responses)


class IdempotencyService:
    """Service for handling idempotent requests.

    Provides:
    - Check if request was already processed (or is being processed)
    - Store response for idempotency key
    - Detect request conflicts
    """

    def __init__(self, store: InMemoryIdempotencyStore | None = None) -> None:
        self._store = store if store is not None else InMemoryIdempotencyStore()

    @property
    def backend(self) -> InMemoryIdempotencyStore:
        return self._store

    @staticmethod
    def compute_request_hash(method: str, path: str, body: bytes) -> str:
        """Compute the fingerprint of a request.

        Args:
            method: HTTP method.
            path: Request path.
            body: Raw request body.

        Returns:
            SHA-256 hex digest.
        """
        digest = hashlib.sha256()
        digest.update(method.upper().encode())
        digest.update(b"\n")
        digest.update(path.encode())
        digest.update(b"\n")
        digest.update(body)
        return digest.hexdigest()

    async def check(self, idempotency_key: str, method: str, path: str, body: bytes) -> IdempotencyResult:
        """Check a key and reserve it when it is new.

        Waits while another request holding the same key is in flight.

        Args:
            idempotency_key: The idempotency key from header.
            method: HTTP method.
            path: Request path.
            body: Raw request body.

        Returns:
            IdempotencyResult describing whether to replay, reject or execute.
        """
        fingerprint = self.compute_request_hash(method, path, body)
        while True:
            cached = self._store.get(idempotency_key)
            if cached is not None:
                if cached.fingerprint != fingerprint:
                    return self._conflict(idempotency_key, path)
                logger.info(
                    "Returning cached idempotent response",
                    idempotency_key=idempotency_key,
                    path=path,
                    original_status=cached.status_code,
                )
                return IdempotencyResult(is_cached=True, cached_response=cached)

            reservation = self._store.get_reservation(idempotency_key)
            if reservation is None:
                self._store.reserve(idempotency_key, fingerprint)
                return IdempotencyResult(is_cached=False, reserved=True)

            if reservation.fingerprint != fingerprint:
                return self._conflict(idempotency_key, path)

            logger.debug("Waiting for in-flight idempotent request", idempotency_key=idempotency_key)
            await reservation.done.wait()

    @staticmethod
    def _conflict(idempotency_key: str, path: str) -> IdempotencyResult:
        logger.warning(
            "Idempotency key reused with different request",
            idempotency_key=idempotency_key,
            path=path,
        )
        return IdempotencyResult(
            is_cached=False,
            is_conflict=True,
            conflict_message="Idempotency key already used with a different request",
        )

    async def store(
        self,
        idempotency_key: str,
        method: str,
        path: str,
        request_body: bytes,
        status_code: int,
        body: bytes,
        media_type: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> CachedResponse:
        """Store the response for a reserved key and wake any waiters.

        Returns:
            The cached response.
        """
        now = self._store.now()
        cached = CachedResponse(
            idempotency_key=idempotency_key,
            method=method,
            path=path,
            fingerprint=self.compute_request_hash(method, path, request_body),
            status_code=status_code,
            body=body,
            media_type=media_type,
            headers=dict(headers or {}),
            created_at=now,
            expires_at=now + timedelta(seconds=self._store.ttl_seconds),
        )
        self._store.put(cached)
        self._store.release(idempotency_key)

        logger.debug(
            "Stored idempotent response",
            idempotency_key=idempotency_key,
            path=path,
            method=method,
            status=status_code,
        )
        return cached

    async def release(self, idempotency_key: str) -> None:
        """Drop a reservation without storing a response."""
        self._store.release(idempotency_key)
        logger.debug("Released idempotency key", idempotency_key=idempotency_key)
