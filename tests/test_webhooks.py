"""
Tests for payment notification reconciliation and signature checks.
"""
import hashlib
import hmac
import uuid
from typing import Any

import pytest

from marketplace_core.core.exceptions import (
    ConfigurationError,
    ReconciliationFailure,
    WebhookSignatureInvalid,
)
from marketplace_core.core.orders import OrderLifecycleManager
from marketplace_core.core.payment_reconciler import (
    PaymentReconciler,
    parse_signature_header,
    signature_manifest,
)
from marketplace_core.database.models import Booking, OrderStatus

from .helpers import PLATFORM_TOKEN, create_partner, seed_order

WEBHOOK_SECRET = "whsec-test"


@pytest.fixture
def reconciler(
    gateway_client: Any, session_factory: Any, test_settings: Any
) -> PaymentReconciler:
    return PaymentReconciler(gateway_client, OrderLifecycleManager(session_factory), test_settings)


def sign(data_id: str, request_id: str, ts: str = "1700000000", secret: str = WEBHOOK_SECRET) -> str:
    digest = hmac.new(
        secret.encode(), signature_manifest(data_id, request_id, ts).encode(), hashlib.sha256
    ).hexdigest()
    return f"ts={ts},v1={digest}"


class TestHandlePaymentNotification:
    """Test suite for PaymentReconciler.handle_payment_notification."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_payment_confirms_order_and_booking(
        self, reconciler: PaymentReconciler, session_factory: Any, fake_gateway: Any
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(
            session_factory, partner.id, with_booking=True, preference_id="pref-1"
        )
        fake_gateway.add_payment("2001", "approved", str(order.id))

        result = await reconciler.handle_payment_notification("2001")

        assert result == {
            "payment_id": "2001",
            "payment_status": "approved",
            "order_id": str(order.id),
            "status": "applied",
        }
        stored = await reconciler.lifecycle.get_order(order.id)
        assert stored.status == OrderStatus.CONFIRMED.value
        assert stored.payment_id == "2001"
        assert stored.payment_status == "approved"
        async with session_factory() as db:
            booking = await db.get(Booking, order.booking_id)
        assert booking.status == "confirmed"

        request = fake_gateway.calls("GET", "/v1/payments/2001")[0]
        assert request.headers["Authorization"] == f"Bearer {PLATFORM_TOKEN}"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejected_payment_marks_order_failed(
        self, reconciler: PaymentReconciler, session_factory: Any, fake_gateway: Any
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(session_factory, partner.id, preference_id="pref-1")
        fake_gateway.add_payment("2002", "rejected", str(order.id))

        result = await reconciler.handle_payment_notification("2002")

        assert result["status"] == "applied"
        stored = await reconciler.lifecycle.get_order(order.id)
        assert stored.status == OrderStatus.PAYMENT_FAILED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_payment_cancels_booking(
        self, reconciler: PaymentReconciler, session_factory: Any, fake_gateway: Any
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(
            session_factory, partner.id, with_booking=True, preference_id="pref-1"
        )
        fake_gateway.add_payment("2003", "cancelled", str(order.id))

        await reconciler.handle_payment_notification("2003")

        async with session_factory() as db:
            booking = await db.get(Booking, order.booking_id)
        assert booking.status == "cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment_status", ["pending", "in_process", "refunded"])
    async def test_unmapped_status_is_ignored(
        self,
        reconciler: PaymentReconciler,
        session_factory: Any,
        fake_gateway: Any,
        payment_status: str,
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(session_factory, partner.id, preference_id="pref-1")
        fake_gateway.add_payment("2004", payment_status, str(order.id))

        result = await reconciler.handle_payment_notification("2004")

        assert result["status"] == "ignored"
        stored = await reconciler.lifecycle.get_order(order.id)
        assert stored.status == OrderStatus.PENDING_PAYMENT.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivery_is_a_duplicate(
        self, reconciler: PaymentReconciler, session_factory: Any, fake_gateway: Any
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(session_factory, partner.id, preference_id="pref-1")
        fake_gateway.add_payment("2005", "approved", str(order.id))

        first = await reconciler.handle_payment_notification("2005")
        second = await reconciler.handle_payment_notification("2005")

        assert first["status"] == "applied"
        assert second["status"] == "duplicate"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approval_after_expiry_is_rejected(
        self, reconciler: PaymentReconciler, session_factory: Any, fake_gateway: Any
    ) -> None:
        partner = await create_partner(session_factory)
        order = await seed_order(session_factory, partner.id, preference_id="pref-1")
        await reconciler.lifecycle.transition(order, OrderStatus.CANCELLED)
        fake_gateway.add_payment("2006", "approved", str(order.id))

        result = await reconciler.handle_payment_notification("2006")

        assert result["status"] == "rejected"
        stored = await reconciler.lifecycle.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(
        self, reconciler: PaymentReconciler, fake_gateway: Any
    ) -> None:
        fake_gateway.add_payment("2007", "approved", str(uuid.uuid4()))

        result = await reconciler.handle_payment_notification("2007")

        assert result["status"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_foreign_reference_is_ignored(
        self, reconciler: PaymentReconciler, fake_gateway: Any
    ) -> None:
        fake_gateway.add_payment("2008", "approved", "invoice-77")

        result = await reconciler.handle_payment_notification("2008")

        assert result["status"] == "ignored"
        assert "order_id" not in result

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_is_a_reconciliation_failure(
        self, reconciler: PaymentReconciler
    ) -> None:
        with pytest.raises(ReconciliationFailure) as exc_info:
            await reconciler.handle_payment_notification("9999")

        assert exc_info.value.step == "fetch_payment"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_platform_token(
        self, gateway_client: Any, session_factory: Any, test_settings: Any, fake_gateway: Any
    ) -> None:
        settings = test_settings.model_copy(update={"gateway_platform_access_token": ""})
        reconciler = PaymentReconciler(
            gateway_client, OrderLifecycleManager(session_factory), settings
        )

        with pytest.raises(ConfigurationError):
            await reconciler.handle_payment_notification("2001")
        assert fake_gateway.requests == []


class TestVerifySignature:
    """Test suite for webhook signature verification."""

    @pytest.fixture
    def signed_reconciler(
        self, gateway_client: Any, session_factory: Any, test_settings: Any
    ) -> PaymentReconciler:
        settings = test_settings.model_copy(update={"gateway_webhook_secret": WEBHOOK_SECRET})
        return PaymentReconciler(gateway_client, OrderLifecycleManager(session_factory), settings)

    @pytest.mark.unit
    def test_parse_header(self) -> None:
        assert parse_signature_header("ts=17, v1=abc") == {"ts": "17", "v1": "abc"}

    @pytest.mark.unit
    def test_manifest_lowercases_id(self) -> None:
        assert signature_manifest("ABC", "req-1", "17") == "id:abc;request-id:req-1;ts:17;"
        assert signature_manifest("abc", None, "17") == "id:abc;ts:17;"

    @pytest.mark.unit
    def test_valid_signature(self, signed_reconciler: PaymentReconciler) -> None:
        signed_reconciler.verify_signature("2001", sign("2001", "req-1"), "req-1")

    @pytest.mark.unit
    def test_wrong_secret(self, signed_reconciler: PaymentReconciler) -> None:
        header = sign("2001", "req-1", secret="other-secret")

        with pytest.raises(WebhookSignatureInvalid, match="does not match"):
            signed_reconciler.verify_signature("2001", header, "req-1")

    @pytest.mark.unit
    def test_tampered_request_id(self, signed_reconciler: PaymentReconciler) -> None:
        with pytest.raises(WebhookSignatureInvalid):
            signed_reconciler.verify_signature("2001", sign("2001", "req-1"), "req-2")

    @pytest.mark.unit
    @pytest.mark.parametrize("header", [None, "", "v1=abc", "ts=17"])
    def test_missing_or_malformed_header(
        self, signed_reconciler: PaymentReconciler, header: Any
    ) -> None:
        with pytest.raises(WebhookSignatureInvalid):
            signed_reconciler.verify_signature("2001", header, "req-1")

    @pytest.mark.unit
    def test_no_secret_skips_verification(self, reconciler: PaymentReconciler) -> None:
        reconciler.verify_signature("2001", None, None)
