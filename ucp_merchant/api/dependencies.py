"""FastAPI dependencies resolving services from the app's container."""

from fastapi import Request

from ucp_merchant.application.checkout_service import CheckoutService
from ucp_merchant.application.container import ServiceContainer
from ucp_merchant.application.order_service import OrderService
from ucp_merchant.application.webhook_service import PaymentWebhookService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_checkout_service(request: Request) -> CheckoutService:
    return get_container(request).checkout_service


def get_order_service(request: Request) -> OrderService:
    return get_container(request).order_service


def get_webhook_service(request: Request) -> PaymentWebhookService:
    return get_container(request).webhook_service
