"""Request signature verification.

Signed requests carry two headers:

- ``UCP-Timestamp``: Unix time in seconds.
- ``UCP-Signature``: hex HMAC-SHA256 of ``"<timestamp>.<raw body>"``.

Timestamps further than ``max_age_seconds`` from now, in either direction,
are rejected to limit replay.
"""

import hashlib
import hmac
import time
from collections.abc import Callable

import structlog

from ucp_merchant.domain.exceptions import AuthError

logger = structlog.get_logger()

SIGNATURE_HEADER = "UCP-Signature"
TIMESTAMP_HEADER = "UCP-Timestamp"


class RequestSignatureVerifier:
    """HMAC-SHA256 signer and verifier for request bodies."""

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("Signature secret must not be empty")
        self._secret = secret.encode()
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def sign(self, timestamp: int | str, body: bytes) -> str:
        message = f"{timestamp}.".encode() + body
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, timestamp: str | None, signature: str | None, body: bytes) -> None:
        """Verify a request signature.

        Args:
            timestamp: ``UCP-Timestamp`` header value.
            signature: ``UCP-Signature`` header value.
            body: Raw request body.

        Raises:
            AuthError: If a header is missing, the timestamp is malformed or
                stale, or the signature does not match.
        """
        if not timestamp or not signature:
            raise AuthError(
                "Missing request signature headers",
                {"required_headers": [TIMESTAMP_HEADER, SIGNATURE_HEADER]},
            )
        try:
            ts = int(timestamp)
        except ValueError as e:
            raise AuthError("Invalid signature timestamp", {"timestamp": timestamp}) from e

        skew = abs(self._clock() - ts)
        if skew > self.max_age_seconds:
            raise AuthError(
                "Signature timestamp outside allowed window",
                {"timestamp": ts, "max_age_seconds": self.max_age_seconds},
            )

        expected = self.sign(ts, body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("Request signature mismatch", timestamp=ts)
            raise AuthError("Invalid request signature")
