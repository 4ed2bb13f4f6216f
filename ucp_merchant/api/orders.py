"""Order API endpoints.

Provides endpoints for order management after checkout:
- GET /orders, GET /orders/{id} - list and fetch orders
- PATCH /orders/{id} - fulfilment progress and status
- POST /orders/{id}/refund - refund all or part of the payment
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from ucp_merchant.api.dependencies import get_order_service
from ucp_merchant.api.schemas import ErrorResponse, ListResponse, RefundOrderRequest, UpdateOrderRequest
from ucp_merchant.application.order_service import LineItemProgress, OrderService
from ucp_merchant.domain.state_machines import OrderStatus

router = APIRouter(prefix="/orders", tags=["Orders"])

Service = Annotated[OrderService, Depends(get_order_service)]

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get("", response_model=ListResponse)
async def list_orders(
    service: Service,
    status_filter: Annotated[OrderStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ListResponse:
    orders = await service.list_orders(status=status_filter, limit=limit + 1, offset=offset)
    return ListResponse(
        items=[order.to_dict() for order in orders[:limit]],
        limit=limit,
        offset=offset,
        has_more=len(orders) > limit,
    )


@router.get("/{order_id}", responses=ERROR_RESPONSES)
async def get_order(order_id: str, service: Service) -> dict[str, Any]:
    return (await service.get(order_id)).to_dict()


@router.patch("/{order_id}", responses=ERROR_RESPONSES)
async def update_order(order_id: str, body: UpdateOrderRequest, service: Service) -> dict[str, Any]:
    """Update fulfilment progress; cancelling a paid order refunds it."""
    order = await service.update(
        order_id,
        status=body.status,
        line_items=[
            LineItemProgress(
                line_item_id=item.line_item_id,
                quantity_fulfilled=item.quantity_fulfilled,
                quantity_cancelled=item.quantity_cancelled,
            )
            for item in body.line_items
        ],
        tracking_number=body.tracking_number,
        carrier=body.carrier,
    )
    return order.to_dict()


@router.post("/{order_id}/refund", responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse}})
async def refund_order(order_id: str, body: RefundOrderRequest, service: Service) -> dict[str, Any]:
    result = await service.refund(
        order_id,
        amount=body.amount.to_domain() if body.amount else None,
        reason=body.reason,
    )
    return {"refund": result.refund.to_dict(), "order": result.order.to_dict()}
