"""Domain exceptions.

All business-rule violations raised by entities, state machines, the
discount engine and the payment layer. Every error carries a stable
``error_code``, the HTTP ``status_code`` it maps to at the API boundary
and whether the client may retry the same request.
"""

from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions."""

    error_code: str = "DOMAIN_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error in the API error envelope shape."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Generic Errors
# ============================================================================


class ValidationError(DomainError):
    """Raised when input violates a domain invariant."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(DomainError):
    """Raised when a referenced resource does not exist."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource} {resource_id} not found",
            details={"resource": resource, "id": resource_id},
        )


class InvalidStateTransitionError(DomainError):
    """Raised when an invalid state transition is attempted.

    This error indicates that the requested operation cannot be performed
    in the current state of the entity.
    """

    error_code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        target_state: str,
        allowed_transitions: list[str] | None = None,
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            entity_type: Type of entity (e.g., "CheckoutSession", "PaymentIntent").
            entity_id: ID of the entity.
            current_state: Current state of the entity.
            target_state: Attempted target state.
            allowed_transitions: List of allowed target states from current state.
        """
        allowed = sorted(allowed_transitions or [])
        message = (
            f"Cannot transition {entity_type}({entity_id}) "
            f"from '{current_state}' to '{target_state}'. "
            f"Allowed transitions: {allowed}"
        )
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_transitions": allowed,
            },
        )


# ============================================================================
# Money Errors
# ============================================================================


class MoneyError(DomainError):
    """Base class for money-related errors."""

    error_code = "INVALID_MONEY"


class InvalidMoneyError(MoneyError):
    """Raised when an amount is not an exact decimal string."""

    def __init__(self, value: Any, reason: str = "Amount must be a decimal string") -> None:
        super().__init__(
            f"Invalid money amount {value!r}: {reason}",
            details={"value": str(value), "reason": reason},
        )


class CurrencyMismatchError(MoneyError):
    """Raised when attempting to combine money with different currencies."""

    error_code = "CURRENCY_MISMATCH"

    def __init__(self, currency1: str, currency2: str) -> None:
        """Initialize currency mismatch error.

        Args:
            currency1: First currency code.
            currency2: Second currency code.
        """
        super().__init__(
            f"Cannot combine money with different currencies: {currency1} and {currency2}",
            details={"currency1": currency1, "currency2": currency2},
        )


# ============================================================================
# Checkout Errors
# ============================================================================


class CartInvariantError(ValidationError):
    """Raised when cart totals do not add up."""

    error_code = "CART_INVARIANT_VIOLATION"


class CheckoutExpiredError(DomainError):
    """Raised when acting on a checkout session past its expiry."""

    error_code = "CHECKOUT_EXPIRED"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Checkout session {session_id} has expired",
            details={"session_id": session_id},
        )


class CheckoutNotEditableError(DomainError):
    """Raised when modifying a session that is processing or finished."""

    error_code = "CHECKOUT_NOT_EDITABLE"
    status_code = 409

    def __init__(self, session_id: str, current_status: str) -> None:
        super().__init__(
            f"Checkout session {session_id} is not editable in status '{current_status}'",
            details={"session_id": session_id, "current_status": current_status},
        )


class ShippingAddressRequiredError(ValidationError):
    """Raised when shipping options are requested before an address is set."""

    error_code = "SHIPPING_ADDRESS_REQUIRED"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Shipping address required to calculate shipping options",
            details={"session_id": session_id},
        )


# ============================================================================
# Discount Errors
# ============================================================================


class DiscountError(ValidationError):
    """Base class for discount-related errors."""

    pass


class InvalidDiscountCodeError(DiscountError):
    """Raised when a code is unknown or not applicable to the cart."""

    error_code = "INVALID_DISCOUNT_CODE"

    def __init__(self, code: str, reason: str = "Unknown discount code") -> None:
        super().__init__(
            f"Discount code '{code}' is not valid: {reason}",
            details={"code": code, "reason": reason},
        )


class DiscountAlreadyAppliedError(DiscountError):
    """Raised when the same discount is applied twice to one session."""

    error_code = "DISCOUNT_ALREADY_APPLIED"

    def __init__(self, code: str, discount_id: str) -> None:
        super().__init__(
            f"Discount '{code}' is already applied",
            details={"code": code, "discount_id": discount_id},
        )


# ============================================================================
# Payment Errors
# ============================================================================


class PaymentError(DomainError):
    """Base class for payment-related errors."""

    error_code = "PAYMENT_ERROR"


class PaymentFailedError(PaymentError):
    """Raised when the provider declines or cannot complete a payment.

    The message is the provider's own failure message. The client may retry
    with a different payment method.
    """

    error_code = "PAYMENT_FAILED"
    status_code = 400

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, details)
        if error_code is not None:
            self.error_code = error_code


class PaymentProviderError(PaymentError):
    """Raised when the provider is unreachable or the outcome is unknown."""

    error_code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502
    retryable = True


# ============================================================================
# Security Errors
# ============================================================================


class AuthError(DomainError):
    """Raised when request signature verification fails."""

    error_code = "AUTH_ERROR"
    status_code = 401


class RateLimitedError(DomainError):
    """Raised when a client exceeds its request budget."""

    error_code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            "Too many requests",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class IdempotencyConflictError(DomainError):
    """Raised when an idempotency key is reused with a different request."""

    error_code = "IDEMPOTENCY_CONFLICT"
    status_code = 409

    def __init__(self, key: str) -> None:
        super().__init__(
            "Idempotency key was already used with a different request payload",
            details={"idempotency_key": key},
        )
