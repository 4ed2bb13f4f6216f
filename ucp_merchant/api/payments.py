"""Payment endpoints.

Provides:
- DELETE /payment-methods/{id} - remove a saved payment method
- POST /webhooks/payments - receive payment provider events
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Request, Response, status

from ucp_merchant.api.dependencies import get_container, get_webhook_service
from ucp_merchant.application.checkout_service import call_provider
from ucp_merchant.application.webhook_service import PaymentWebhookService

logger = structlog.get_logger()

router = APIRouter(tags=["Payments"])

WEBHOOK_SIGNATURE_HEADERS = ("Stripe-Signature", "UCP-Webhook-Signature")


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(payment_method_id: str, request: Request) -> Response:
    container = get_container(request)
    await call_provider(
        lambda: container.payment_handler.delete_payment_method(payment_method_id),
        container.settings.payment_timeout_seconds,
        "delete_payment_method",
    )
    logger.info("Payment method deleted", payment_method_id=payment_method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/webhooks/payments")
async def receive_payment_webhook(
    request: Request,
    service: Annotated[PaymentWebhookService, Depends(get_webhook_service)],
) -> dict[str, Any]:
    """Verify and record a provider event.

    Redeliveries of an event already seen are acknowledged with
    ``status: duplicate``.
    """
    payload = await request.body()
    signature = next(
        (request.headers[name] for name in WEBHOOK_SIGNATURE_HEADERS if name in request.headers),
        "",
    )
    result = await service.process(payload, signature)
    return {
        "received": True,
        "event_id": result.event_id,
        "event_type": result.event_type,
        "status": result.status.value,
    }
