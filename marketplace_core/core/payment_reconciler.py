"""
Payment webhook reconciliation.

The gateway only tells us that payment ``id`` changed; the payment itself
is fetched back with the marketplace application token and applied to the
order named by its external reference, through the lifecycle transition
table. Notifications are delivered at least once and in any order, so
every outcome that is already recorded is a no-op.
"""
import hashlib
import hmac
import time
import uuid
from typing import Any, Dict, Optional

import structlog

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import (
    ConfigurationError,
    InvalidStateTransition,
    ReconciliationFailure,
    WebhookSignatureInvalid,
)
from marketplace_core.core.orders import OrderLifecycleManager
from marketplace_core.database.models import OrderStatus
from marketplace_core.integrations.gateway_client import GatewayClient, GatewayError
from marketplace_core.integrations.gateway_models import GatewayPayment
from marketplace_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Gateway payment status -> order status. Statuses not listed leave the order alone.
PAYMENT_STATUS_MAP: Dict[str, OrderStatus] = {
    "approved": OrderStatus.CONFIRMED,
    "rejected": OrderStatus.PAYMENT_FAILED,
    "cancelled": OrderStatus.CANCELLED,
}


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts."""
    parts: Dict[str, str] = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: Optional[str], ts: str) -> str:
    manifest = f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    return manifest + f"ts:{ts};"


class PaymentReconciler:
    """Applies gateway payment notifications to local orders."""

    def __init__(
        self,
        gateway: GatewayClient,
        lifecycle: OrderLifecycleManager,
        settings: Optional[Settings] = None,
    ) -> None:
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.settings = settings or get_settings()

    def verify_signature(
        self, data_id: str, signature_header: Optional[str], request_id: Optional[str]
    ) -> None:
        """
        Check the ``x-signature`` header of a notification.

        Verification is skipped when no webhook secret is configured.

        Raises:
            WebhookSignatureInvalid: If the header is missing, malformed or does not match
        """
        secret = self.settings.gateway_webhook_secret
        if not secret:
            return

        if not signature_header:
            logger.warning("webhook_signature_missing", data_id=data_id)
            raise WebhookSignatureInvalid("Missing x-signature header")

        parts = parse_signature_header(signature_header)
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            logger.warning("webhook_signature_malformed", data_id=data_id)
            raise WebhookSignatureInvalid("Malformed x-signature header")

        expected = hmac.new(
            secret.encode("utf-8"),
            signature_manifest(data_id, request_id, ts).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        if not hmac.compare_digest(expected, received):
            logger.error("webhook_signature_verification_failed", data_id=data_id)
            raise WebhookSignatureInvalid("Webhook signature does not match")

    async def _fetch_payment(self, payment_id: str) -> GatewayPayment:
        token = self.settings.gateway_platform_access_token
        if not token:
            raise ConfigurationError("Platform access token is not configured")
        try:
            return await self.gateway.get_payment(token, payment_id)
        except GatewayError as e:
            raise ReconciliationFailure(
                f"Could not fetch payment {payment_id}: {e}",
                step="fetch_payment",
                payment_id=payment_id,
            ) from e

    async def handle_payment_notification(self, payment_id: str) -> Dict[str, Any]:
        """
        Reconcile one payment notification.

        Returns:
            Dict with ``status`` (applied, ignored, duplicate, stale, rejected
            or not_found) and the ids involved

        Raises:
            ConfigurationError: If the platform token is missing
            ReconciliationFailure: If the payment could not be fetched; the
                gateway redelivers the notification
        """
        start_time = time.time()
        result = await self._reconcile(payment_id)
        metrics.record_webhook_event(result["status"], time.time() - start_time)
        return result

    async def _reconcile(self, payment_id: str) -> Dict[str, Any]:
        payment = await self._fetch_payment(payment_id)
        log = logger.bind(
            payment_id=str(payment.id),
            payment_status=payment.status,
            external_reference=payment.external_reference,
        )
        result: Dict[str, Any] = {
            "payment_id": str(payment.id),
            "payment_status": payment.status,
        }

        try:
            order_id = uuid.UUID(payment.external_reference or "")
        except ValueError:
            log.warning("webhook_payment_without_order_reference")
            return {**result, "status": "ignored"}

        result["order_id"] = str(order_id)
        order = await self.lifecycle.get_order(order_id)
        if order is None:
            log.warning("webhook_order_not_found")
            return {**result, "status": "not_found"}

        target = PAYMENT_STATUS_MAP.get(payment.status)
        if target is None:
            # pending, in_process, refunded, charged_back...
            log.info("webhook_payment_status_ignored", order_status=order.status)
            return {**result, "status": "ignored"}

        if order.status == target.value:
            log.info("webhook_already_applied", order_status=order.status)
            return {**result, "status": "duplicate"}

        try:
            applied = await self.lifecycle.transition(
                order, target, payment_id=str(payment.id), payment_status=payment.status
            )
        except InvalidStateTransition:
            log.error("webhook_payment_conflicts_with_order", order_status=order.status)
            return {**result, "status": "rejected"}

        if not applied:
            return {**result, "status": "stale"}

        if order.booking_id is not None:
            if target is OrderStatus.CONFIRMED:
                await self.lifecycle.confirm_booking(order.booking_id)
            elif target is OrderStatus.CANCELLED:
                await self.lifecycle.cancel_booking(order.booking_id)

        log.info("webhook_payment_applied", order_status=target.value)
        return {**result, "status": "applied"}
