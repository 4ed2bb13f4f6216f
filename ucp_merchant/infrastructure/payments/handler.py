"""Payment handler interface.

Every payment provider (the local simulator, Stripe, ...) implements this
abstract base class. The checkout and order services only ever talk to a
``PaymentHandler``; the concrete provider is chosen once at startup by
``create_payment_handler``.
"""

from abc import ABC, abstractmethod

from ucp_merchant.domain.payments import (
    AvailablePaymentMethods,
    CapturePaymentRequest,
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentIntent,
    PaymentMethodInfo,
    PaymentWebhookEvent,
    Refund,
    RefundRequest,
)


class PaymentHandler(ABC):
    """Abstract payment provider.

    Implementations must enforce the payment state machine: a captured
    intent can never be cancelled, and partial captures and refunds are
    bounded by the authorized and captured amounts.

    Errors:
        PaymentFailedError: The provider declined the operation.
        PaymentProviderError: The outcome is unknown (timeout, transport
            failure, provider outage); callers reconcile with
            ``get_payment_intent``.
        NotFoundError: Unknown intent or payment method.
    """

    name: str

    @abstractmethod
    async def get_available_methods(self, customer_id: str | None = None) -> AvailablePaymentMethods:
        """Get payment methods for a checkout, including saved methods."""

    @abstractmethod
    async def create_payment_intent(self, request: CreatePaymentRequest) -> PaymentIntent:
        """Create a payment intent for the requested amount.

        A repeated call with the same ``request.idempotency_key`` returns
        the intent created by the first call.
        """

    @abstractmethod
    async def confirm_payment(self, request: ConfirmPaymentRequest) -> PaymentIntent:
        """Confirm (authorize) a pending intent."""

    @abstractmethod
    async def capture_payment(self, request: CapturePaymentRequest) -> PaymentIntent:
        """Capture an authorized intent, fully or partially."""

    @abstractmethod
    async def cancel_payment(self, payment_intent_id: str) -> PaymentIntent:
        """Cancel an intent that has not been captured."""

    @abstractmethod
    async def refund(self, request: RefundRequest) -> Refund:
        """Refund a captured intent, fully or partially."""

    @abstractmethod
    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Fetch the provider's current view of an intent."""

    @abstractmethod
    async def get_saved_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]:
        """List a customer's saved payment methods."""

    @abstractmethod
    async def delete_payment_method(self, payment_method_id: str) -> None:
        """Delete a saved payment method."""

    @abstractmethod
    async def parse_webhook_event(self, payload: bytes, signature: str) -> PaymentWebhookEvent | None:
        """Verify and parse a provider webhook.

        Returns:
            The event, or None if the signature or payload is invalid.
        """

    async def close(self) -> None:
        """Release provider resources (HTTP clients, ...)."""
        return None
