"""Payment webhook processing service.

Handles incoming payment provider webhooks with:
- Signature verification (delegated to the payment handler)
- Event deduplication
- Structured logging of the payment state reported by the provider
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from ucp_merchant.domain.exceptions import AuthError
from ucp_merchant.domain.payments import PaymentWebhookEvent
from ucp_merchant.infrastructure.payments.handler import PaymentHandler

logger = structlog.get_logger()


class EventStatus(str, Enum):
    """Status of a webhook event in the event log."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"


@dataclass
class WebhookResult:
    """Result of webhook processing.

    Attributes:
        event_id: The event ID.
        event_type: Provider event type.
        status: Final event status.
        duplicate: Whether this was a duplicate event.
    """

    event_id: str
    event_type: str
    status: EventStatus
    duplicate: bool = False


class PaymentWebhookService:
    """Service for processing payment provider webhooks."""

    def __init__(self, payment_handler: PaymentHandler, max_tracked_events: int = 10000) -> None:
        self.payment_handler = payment_handler
        self.max_tracked_events = max_tracked_events
        self._seen: dict[str, PaymentWebhookEvent] = {}

    async def process(self, payload: bytes, signature: str) -> WebhookResult:
        """Verify, deduplicate and record a webhook.

        Raises:
            AuthError: If the signature or payload is invalid.
        """
        event = await self.payment_handler.parse_webhook_event(payload, signature)
        if event is None:
            raise AuthError("Invalid webhook signature or payload", {"provider": self.payment_handler.name})

        if event.id in self._seen:
            logger.info("Duplicate webhook event ignored", event_id=event.id, event_type=event.type)
            return WebhookResult(event_id=event.id, event_type=event.type, status=EventStatus.DUPLICATE, duplicate=True)

        if len(self._seen) >= self.max_tracked_events:
            self._seen.pop(next(iter(self._seen)))
        self._seen[event.id] = event

        logger.info(
            "Payment webhook received",
            event_id=event.id,
            event_type=event.type,
            payment_intent_id=event.payment_intent_id,
            provider=self.payment_handler.name,
        )
        return WebhookResult(event_id=event.id, event_type=event.type, status=EventStatus.PROCESSED)

    def get_event(self, event_id: str) -> PaymentWebhookEvent | None:
        return self._seen.get(event_id)
