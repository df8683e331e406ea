"""
Tests for the order lifecycle: creation, transitions and rollback.
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

import pytest
from sqlalchemy import func, select, update

from marketplace_core.core.exceptions import InvalidStateTransition
from marketplace_core.core.orders import (
    ALLOWED_TRANSITIONS,
    EXPIRY_CLAIM_STATUS,
    BookingDraft,
    OrderDraft,
    OrderLifecycleManager,
)
from marketplace_core.database.models import Booking, Order, OrderStatus, OrderType, utcnow

from .helpers import create_partner


def make_draft(partner_id: uuid.UUID, booking: Optional[BookingDraft] = None) -> OrderDraft:
    return OrderDraft(
        partner_id=partner_id,
        customer_id=uuid.uuid4(),
        order_type=OrderType.SERVICE_BOOKING if booking else OrderType.PRODUCT_PURCHASE,
        items=[{"id": "sku-1", "name": "Bath", "unit_price": "1000.00", "quantity": 2}],
        currency="UYU",
        subtotal=Decimal("2000.00"),
        tax_amount=Decimal("440.00"),
        tax_rate=Decimal("22"),
        tax_included=False,
        shipping_cost=Decimal("0"),
        total_amount=Decimal("2440.00"),
        commission_percentage=Decimal("5"),
        commission_amount=Decimal("122.00"),
        partner_amount=Decimal("2318.00"),
        booking=booking,
    )


def make_booking() -> BookingDraft:
    return BookingDraft(
        service_id=uuid.uuid4(), scheduled_date="2026-11-02", scheduled_time="10:30"
    )


async def count(session_factory: Any, model: Any) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestTransitionTable:
    """Test suite for the closed transition table."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT),
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_FAILED),
            (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED),
            (OrderStatus.CONFIRMED, OrderStatus.COMPLETED),
            (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
            (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED),
        ],
    )
    def test_allowed(self, from_status: OrderStatus, to_status: OrderStatus) -> None:
        assert OrderLifecycleManager.can_transition(from_status, to_status)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
            (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderStatus.PENDING),
            (OrderStatus.PAYMENT_FAILED, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING),
        ],
    )
    def test_rejected(self, from_status: OrderStatus, to_status: OrderStatus) -> None:
        with pytest.raises(InvalidStateTransition) as exc_info:
            OrderLifecycleManager.check_transition(uuid.uuid4(), from_status, to_status)
        assert exc_info.value.from_status == from_status.value
        assert exc_info.value.to_status == to_status.value

    @pytest.mark.unit
    def test_terminal_states_have_no_exits(self) -> None:
        assert ALLOWED_TRANSITIONS[OrderStatus.COMPLETED] == frozenset()
        assert ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()


class TestOrderLifecycleManager:
    """Test suite for OrderLifecycleManager against a database."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_product_order(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)

        order = await manager.create_order(make_draft(partner.id))

        stored = await manager.get_order(order.id)
        assert stored is not None
        assert stored.status == OrderStatus.PENDING.value
        assert stored.total_amount == Decimal("2440.00")
        assert stored.booking_id is None
        assert await count(session_factory, Booking) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_service_order_with_booking(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)

        order = await manager.create_order(make_draft(partner.id, make_booking()))

        async with session_factory() as db:
            booking = await db.get(Booking, order.booking_id)
        assert booking is not None
        assert booking.order_id == order.id
        assert booking.status == "pending"
        assert booking.scheduled_time == "10:30"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transition_updates_row_and_instance(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))

        applied = await manager.attach_payment_session(order, "pref-1", "https://pay/1")

        assert applied is True
        assert order.status == OrderStatus.PENDING_PAYMENT.value
        stored = await manager.get_order(order.id)
        assert stored.payment_preference_id == "pref-1"
        assert stored.checkout_url == "https://pay/1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_transition_is_a_no_op(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))
        stale_copy = await manager.get_order(order.id)

        assert await manager.transition(order, OrderStatus.CANCELLED) is True
        # The second writer still believes the order is pending
        assert await manager.transition(stale_copy, OrderStatus.CONFIRMED) is False

        stored = await manager.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))
        await manager.transition(order, OrderStatus.CANCELLED)

        with pytest.raises(InvalidStateTransition):
            await manager.transition(order, OrderStatus.CONFIRMED)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback_removes_order_and_booking(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id, make_booking()))

        await manager.rollback(order.id, order.booking_id)

        assert await count(session_factory, Order) == 0
        assert await count(session_factory, Booking) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback_refused_once_session_attached(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id, make_booking()))
        await manager.attach_payment_session(order, "pref-1", "https://pay/1")

        with pytest.raises(InvalidStateTransition, match="can no longer be rolled back"):
            await manager.rollback(order.id, order.booking_id)

        # The booking delete was undone with the rest of the transaction
        assert await count(session_factory, Order) == 1
        assert await count(session_factory, Booking) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_booking_status_changes_are_idempotent(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id, make_booking()))

        assert await manager.cancel_booking(order.booking_id) is True
        assert await manager.cancel_booking(order.booking_id) is False
        assert await manager.confirm_booking(order.booking_id) is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expiry_claim_has_a_single_winner(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))
        other_copy = await manager.get_order(order.id)

        assert await manager.claim_expiry(order, timedelta(minutes=1)) is True
        assert await manager.claim_expiry(other_copy, timedelta(minutes=1)) is False

        stored = await manager.get_order(order.id)
        assert stored.payment_status == EXPIRY_CLAIM_STATUS
        # The claim does not change the status, so the cancel still applies
        assert await manager.transition(order, OrderStatus.CANCELLED) is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_expiry_claim_can_be_retaken(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))
        assert await manager.claim_expiry(order, timedelta(minutes=1)) is True
        async with session_factory() as db:
            await db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(updated_at=utcnow() - timedelta(minutes=5))
            )
            await db.commit()

        retry = await manager.get_order(order.id)

        assert await manager.claim_expiry(retry, timedelta(minutes=1)) is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_order_cannot_be_claimed(self, session_factory: Any) -> None:
        partner = await create_partner(session_factory)
        manager = OrderLifecycleManager(session_factory)
        order = await manager.create_order(make_draft(partner.id))
        stale_copy = await manager.get_order(order.id)
        await manager.transition(order, OrderStatus.CONFIRMED)

        assert await manager.claim_expiry(stale_copy, timedelta(minutes=1)) is False
