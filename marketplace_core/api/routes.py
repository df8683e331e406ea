"""
API routes for checkout, payment notifications, scheduled jobs and monitoring.

Domain errors are not caught here; the ``MarketplaceError`` handler in
``api.main`` turns them into responses.
"""
import json
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace_core.core.checkout import CheckoutCommand
from marketplace_core.core.commission import LineItem
from marketplace_core.core.orders import BookingDraft
from marketplace_core.database.models import Order

from .dependencies import Services, get_services, require_cron_secret
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    DispatchResponse,
    HealthCheckResponse,
    ManualCredentialsRequest,
    OAuthCallbackRequest,
    OrderResponse,
    PartnerConnectionResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(tags=["checkout"])
partner_router = APIRouter(prefix="/partners", tags=["partners"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
jobs_router = APIRouter(
    prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)]
)
monitoring_router = APIRouter(tags=["monitoring"])


def _command_from_request(request: CheckoutRequest) -> CheckoutCommand:
    booking = None
    if request.booking is not None:
        booking = BookingDraft(
            service_id=request.booking.service_id,
            scheduled_date=request.booking.scheduled_date,
            scheduled_time=request.booking.scheduled_time,
            pet_id=request.booking.pet_id,
            notes=request.booking.notes,
        )

    return CheckoutCommand(
        partner_id=request.partner_id,
        customer_id=request.customer_id,
        order_type=request.order_type,
        items=[
            LineItem(
                id=item.id,
                name=item.name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                tax_rate=item.tax_rate,
                discount_percentage=item.discount_percentage,
                currency=item.currency,
            )
            for item in request.items
        ],
        shipping_cost=request.shipping_cost,
        currency=request.currency,
        payer=request.payer.model_dump(exclude_none=True) if request.payer else None,
        shipping_address=(
            request.shipping_address.model_dump(exclude_none=True)
            if request.shipping_address
            else None
        ),
        booking=booking,
    )


def _order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "partner_id": order.partner_id,
        "customer_id": order.customer_id,
        "order_type": order.order_type,
        "status": order.status,
        "items": order.items,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "tax_amount": order.tax_amount,
        "tax_rate": order.tax_rate,
        "tax_included": order.tax_included,
        "shipping_cost": order.shipping_cost,
        "total_amount": order.total_amount,
        "commission_amount": order.commission_amount,
        "partner_amount": order.partner_amount,
        "payment_preference_id": order.payment_preference_id,
        "checkout_url": order.checkout_url,
        "payment_id": order.payment_id,
        "payment_status": order.payment_status,
        "booking_id": order.booking_id,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


@checkout_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a checkout",
    description="Create an order and its hosted payment session",
)
async def create_checkout(
    request: CheckoutRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Start a checkout.

    Nothing is persisted when the partner cannot take payments or the
    gateway refuses the session.
    """
    logger.info(
        "api_checkout_request",
        partner_id=str(request.partner_id),
        order_type=request.order_type.value,
        items=len(request.items),
    )

    result = await services.checkout.checkout(_command_from_request(request))

    return {
        "order_id": result.order_id,
        "status": result.status,
        "preference_id": result.preference_id,
        "checkout_url": result.checkout_url,
        "environment": result.environment,
        "total_amount": result.total_amount,
        "commission_amount": result.commission_amount,
        "partner_amount": result.partner_amount,
        "booking_id": result.booking_id,
    }


@checkout_router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_id: UUID,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Get an order and its payment state."""
    order = await services.lifecycle.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return _order_to_dict(order)


@partner_router.post(
    "/{partner_id}/oauth/callback",
    response_model=PartnerConnectionResponse,
    summary="Complete partner OAuth connection",
)
async def partner_oauth_callback(
    partner_id: UUID,
    request: OAuthCallbackRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.connections.connect_oauth(partner_id, request.code)


@partner_router.post(
    "/{partner_id}/oauth/refresh",
    response_model=PartnerConnectionResponse,
    summary="Refresh partner OAuth credentials",
)
async def partner_oauth_refresh(
    partner_id: UUID,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.connections.refresh(partner_id)


@partner_router.put(
    "/{partner_id}/credentials",
    response_model=PartnerConnectionResponse,
    summary="Save manual partner credentials",
)
async def partner_manual_credentials(
    partner_id: UUID,
    request: ManualCredentialsRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.connections.connect_manual(
        partner_id, request.access_token, request.public_key
    )


@webhook_router.post(
    "/payments",
    response_model=WebhookResponse,
    summary="Payment gateway webhook endpoint",
    description="Reconcile an order with a payment status change",
)
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="x-signature"),
    x_request_id: Optional[str] = Header(default=None, alias="x-request-id"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle a payment notification.

    The gateway sends the topic and payment id in the body, the query
    string, or both. Topics other than ``payment`` are acknowledged and
    ignored.
    """
    body: Dict[str, Any] = {}
    raw = await request.body()
    if raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
        if isinstance(parsed, dict):
            body = parsed

    params = request.query_params
    topic = body.get("type") or body.get("topic") or params.get("type") or params.get("topic")
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    data_id = params.get("data.id") or data.get("id") or params.get("id")

    logger.info("api_webhook_received", topic=topic, data_id=data_id)

    if topic != "payment" or not data_id:
        return {"status": "ignored"}

    data_id = str(data_id)
    services.reconciler.verify_signature(data_id, x_signature, x_request_id)
    return await services.reconciler.handle_payment_notification(data_id)


@jobs_router.post(
    "/expire-orders",
    response_model=SweepResponse,
    summary="Run the expiration sweep",
)
async def expire_orders(services: Services = Depends(get_services)) -> Dict[str, Any]:
    report = await services.sweeper.run_once()
    return report.to_dict()


@jobs_router.post(
    "/send-notifications",
    response_model=DispatchResponse,
    summary="Dispatch due notifications",
)
async def send_notifications(services: Services = Depends(get_services)) -> Dict[str, Any]:
    report = await services.dispatcher.run_once()
    return report.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
