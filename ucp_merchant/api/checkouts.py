"""Checkout API endpoints.

Provides endpoints for the checkout session flow:
- POST /checkout - open a session for a cart
- GET /checkout, GET /checkout/{id} - list and fetch sessions
- PATCH /checkout/{id} - apply update commands
- GET /checkout/{id}/shipping-options - options for the session
- POST/DELETE /checkout/{id}/discount - apply or remove a discount
- POST /checkout/{id}/discount/validate - estimate a discount code
- GET /checkout/{id}/payment-methods - methods available for payment
- POST /checkout/{id}/complete - pay and create the order
- POST /checkout/{id}/cancel - cancel the session
"""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, status

from ucp_merchant.api.dependencies import get_checkout_service
from ucp_merchant.api.schemas import (
    CancelCheckoutRequest,
    CompleteCheckoutRequest,
    CompleteCheckoutResponse,
    CreateCheckoutRequest,
    DiscountCodeRequest,
    ErrorResponse,
    ListResponse,
    UpdateCheckoutRequest,
)
from ucp_merchant.application.checkout_service import CheckoutService
from ucp_merchant.domain.entities import CheckoutSession
from ucp_merchant.domain.state_machines import CheckoutStatus

router = APIRouter(prefix="/checkout", tags=["Checkout"])

Service = Annotated[CheckoutService, Depends(get_checkout_service)]

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def session_to_response(session: CheckoutSession) -> dict[str, Any]:
    """Render a session with its readiness flag."""
    return {**session.to_dict(), "is_ready": session.is_ready}


@router.post("", status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_checkout(body: CreateCheckoutRequest, service: Service) -> dict[str, Any]:
    """Open a checkout session.

    The cart is validated: line totals must equal unit price times quantity
    and any supplied subtotal/total must match the computed values.
    """
    session = await service.create(
        cart=body.cart.to_domain(),
        customer=body.customer.to_domain() if body.customer else None,
        metadata=body.metadata,
    )
    return session_to_response(session)


@router.get("", response_model=ListResponse)
async def list_checkouts(
    service: Service,
    status_filter: Annotated[CheckoutStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ListResponse:
    sessions = await service.list_sessions(status=status_filter, limit=limit + 1, offset=offset)
    return ListResponse(
        items=[session_to_response(s) for s in sessions[:limit]],
        limit=limit,
        offset=offset,
        has_more=len(sessions) > limit,
    )


@router.get("/{session_id}", responses=ERROR_RESPONSES)
async def get_checkout(session_id: str, service: Service) -> dict[str, Any]:
    return session_to_response(await service.get(session_id))


@router.patch("/{session_id}", responses=ERROR_RESPONSES)
async def update_checkout(session_id: str, body: UpdateCheckoutRequest, service: Service) -> dict[str, Any]:
    """Apply update commands in order; all or nothing."""
    session = await service.update(session_id, [command.to_command() for command in body.commands])
    return session_to_response(session)


@router.get("/{session_id}/shipping-options", responses=ERROR_RESPONSES)
async def get_shipping_options(session_id: str, service: Service) -> dict[str, Any]:
    options = await service.get_shipping_options(session_id)
    return {"options": [option.to_dict() for option in options]}


@router.post("/{session_id}/discount", responses=ERROR_RESPONSES)
async def apply_discount(session_id: str, body: DiscountCodeRequest, service: Service) -> dict[str, Any]:
    result = await service.apply_discount(session_id, body.code)
    return {
        "applied": result.applied.to_dict(),
        "session": session_to_response(result.session),
    }


@router.delete("/{session_id}/discount/{discount_id}", responses=ERROR_RESPONSES)
async def remove_discount(session_id: str, discount_id: str, service: Service) -> dict[str, Any]:
    session = await service.remove_discount(session_id, discount_id)
    return session_to_response(session)


@router.post("/{session_id}/discount/validate", responses=ERROR_RESPONSES)
async def validate_discount(session_id: str, body: DiscountCodeRequest, service: Service) -> dict[str, Any]:
    estimate = await service.validate_discount(session_id, body.code)
    return {
        "code": estimate.code,
        "valid": estimate.valid,
        "reason": estimate.reason,
        "discount_id": estimate.discount.id if estimate.discount else None,
        "estimated_amount": estimate.estimated_amount.to_dict() if estimate.estimated_amount else None,
    }


@router.get("/{session_id}/payment-methods", responses=ERROR_RESPONSES)
async def get_payment_methods(session_id: str, service: Service) -> dict[str, Any]:
    methods = await service.get_payment_methods(session_id)
    return methods.to_dict()


@router.post(
    "/{session_id}/complete",
    response_model=CompleteCheckoutResponse,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse}},
)
async def complete_checkout(
    session_id: str,
    service: Service,
    body: Annotated[CompleteCheckoutRequest | None, Body()] = None,
) -> CompleteCheckoutResponse:
    """Charge the cart total and create the order.

    Calling this again for a completed session returns the same order.
    """
    body = body or CompleteCheckoutRequest()
    result = await service.complete(
        session_id,
        payment_method=body.payment_method.to_domain() if body.payment_method else None,
        save_payment_method=body.save_payment_method,
    )
    return CompleteCheckoutResponse(
        order_id=result.order.id,
        order_number=result.order.order_number,
        replayed=result.replayed,
        order=result.order.to_dict(),
    )


@router.post("/{session_id}/cancel", responses=ERROR_RESPONSES)
async def cancel_checkout(
    session_id: str,
    service: Service,
    body: Annotated[CancelCheckoutRequest | None, Body()] = None,
) -> dict[str, Any]:
    session = await service.cancel(session_id, reason=body.reason if body else None)
    return session_to_response(session)
