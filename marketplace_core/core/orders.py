"""
Order lifecycle management.

Creates orders (and their bookings) atomically, rolls freshly created
orders back when checkout cannot start a payment session, and moves orders
between states along a closed transition table. Every state change is a
conditional UPDATE on the status the caller observed, so concurrent
workers racing on the same order cannot both apply it.
"""
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.core.exceptions import InvalidStateTransition
from marketplace_core.database.connection import get_session_factory
from marketplace_core.database.models import (
    Booking,
    BookingStatus,
    Order,
    OrderStatus,
    OrderType,
    utcnow,
)

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.CONFIRMED,
            OrderStatus.PAYMENT_FAILED,
            OrderStatus.CANCELLED,
        }
    ),
    OrderStatus.PENDING_PAYMENT: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ROLLBACK_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PENDING_PAYMENT.value)

EXPIRY_CLAIM_STATUS = "cancelling"


@dataclass
class BookingDraft:
    service_id: uuid.UUID
    scheduled_date: str
    scheduled_time: str
    pet_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


@dataclass
class OrderDraft:
    """Everything needed to insert an order, already priced."""

    partner_id: uuid.UUID
    customer_id: uuid.UUID
    order_type: OrderType
    items: List[Dict[str, Any]]
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    tax_included: bool
    shipping_cost: Decimal
    total_amount: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    partner_amount: Decimal
    shipping_address: Optional[Dict[str, Any]] = None
    payer: Optional[Dict[str, Any]] = None
    booking: Optional[BookingDraft] = None
    order_id: uuid.UUID = field(default_factory=uuid.uuid4)


class OrderLifecycleManager:
    """Owns every write to the orders and bookings tables."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self._session_factory = session_factory or get_session_factory()

    @staticmethod
    def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    @classmethod
    def check_transition(
        cls, order_id: uuid.UUID, from_status: OrderStatus, to_status: OrderStatus
    ) -> None:
        """
        Raise if ``from_status -> to_status`` is not in the transition table.

        Raises:
            InvalidStateTransition: For any edge outside the table
        """
        if not cls.can_transition(from_status, to_status):
            logger.error(
                "order_transition_rejected",
                order_id=str(order_id),
                from_status=from_status.value,
                to_status=to_status.value,
            )
            raise InvalidStateTransition(
                f"Order {order_id} cannot move from {from_status.value} to {to_status.value}",
                from_status=from_status.value,
                to_status=to_status.value,
                order_id=str(order_id),
            )

    async def create_order(self, draft: OrderDraft) -> Order:
        """
        Insert the order and, for service orders, its booking in one transaction.

        Args:
            draft: Priced order draft

        Returns:
            Order: The persisted order (detached, attributes loaded)
        """
        now = utcnow()
        order = Order(
            id=draft.order_id,
            partner_id=draft.partner_id,
            customer_id=draft.customer_id,
            order_type=draft.order_type.value,
            status=OrderStatus.PENDING.value,
            items=draft.items,
            currency=draft.currency,
            subtotal=draft.subtotal,
            tax_amount=draft.tax_amount,
            tax_rate=draft.tax_rate,
            tax_included=draft.tax_included,
            shipping_cost=draft.shipping_cost,
            total_amount=draft.total_amount,
            commission_percentage=draft.commission_percentage,
            commission_amount=draft.commission_amount,
            partner_amount=draft.partner_amount,
            shipping_address=draft.shipping_address,
            payer=draft.payer,
            created_at=now,
            updated_at=now,
        )

        booking: Optional[Booking] = None
        if draft.booking is not None:
            booking = Booking(
                id=uuid.uuid4(),
                order_id=order.id,
                service_id=draft.booking.service_id,
                partner_id=draft.partner_id,
                customer_id=draft.customer_id,
                pet_id=draft.booking.pet_id,
                scheduled_date=draft.booking.scheduled_date,
                scheduled_time=draft.booking.scheduled_time,
                notes=draft.booking.notes,
                status=BookingStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            order.booking_id = booking.id

        async with self._session_factory() as db:
            async with db.begin():
                db.add(order)
                if booking is not None:
                    # Booking references the order, so the order must be flushed first
                    await db.flush()
                    db.add(booking)

        logger.info(
            "order_created",
            order_id=str(order.id),
            partner_id=str(order.partner_id),
            order_type=order.order_type,
            total_amount=str(order.total_amount),
            booking_id=str(order.booking_id) if order.booking_id else None,
        )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self._session_factory() as db:
            return await db.get(Order, order_id)

    async def rollback(self, order_id: uuid.UUID, booking_id: Optional[uuid.UUID] = None) -> None:
        """
        Delete an order created by a checkout that never got a payment session.

        Both deletes run in one transaction. The order delete is conditional
        on it still being unpaid and sessionless; if that matches nothing the
        booking delete is undone too.

        Raises:
            InvalidStateTransition: If the order has moved on or carries a session
        """
        async with self._session_factory() as db:
            async with db.begin():
                if booking_id is not None:
                    await db.execute(
                        delete(Booking).where(
                            Booking.id == booking_id, Booking.order_id == order_id
                        )
                    )
                result = await db.execute(
                    delete(Order).where(
                        Order.id == order_id,
                        Order.status.in_(ROLLBACK_STATUSES),
                        Order.payment_preference_id.is_(None),
                    )
                )
                if result.rowcount != 1:
                    logger.error("order_rollback_refused", order_id=str(order_id))
                    raise InvalidStateTransition(
                        f"Order {order_id} can no longer be rolled back",
                        order_id=str(order_id),
                    )

        logger.info(
            "order_rolled_back",
            order_id=str(order_id),
            booking_id=str(booking_id) if booking_id else None,
        )

    async def transition(self, order: Order, to_status: OrderStatus, **values: Any) -> bool:
        """
        Move an order to ``to_status``.

        The update only applies if the stored status still equals the one on
        ``order``; extra column values in ``values`` are written alongside.

        Returns:
            bool: True if applied, False if another writer got there first

        Raises:
            InvalidStateTransition: If the edge is not allowed
        """
        from_status = OrderStatus(order.status)
        self.check_transition(order.id, from_status, to_status)

        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == from_status.value)
                .values(status=to_status.value, updated_at=now, **values)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.info(
                "order_transition_stale",
                order_id=str(order.id),
                expected_status=from_status.value,
                to_status=to_status.value,
            )
            return False

        order.status = to_status.value
        order.updated_at = now
        for column, value in values.items():
            setattr(order, column, value)

        logger.info(
            "order_status_changed",
            order_id=str(order.id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return True

    async def claim_expiry(self, order: Order, lease: timedelta) -> bool:
        """
        Mark an unpaid order as being cancelled by the caller.

        The update only applies while the order is unpaid and nobody else
        holds a claim younger than ``lease``, so of several sweepers racing
        on the same row exactly one wins. A claim left behind by a crashed
        sweeper expires with the lease and can be taken again.

        Returns:
            bool: True if this caller owns the cancellation
        """
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status.in_(ROLLBACK_STATUSES),
                    or_(
                        Order.payment_status.is_(None),
                        Order.payment_status != EXPIRY_CLAIM_STATUS,
                        Order.updated_at < now - lease,
                    ),
                )
                .values(payment_status=EXPIRY_CLAIM_STATUS, updated_at=now)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.info("order_expiry_claim_lost", order_id=str(order.id))
            return False

        order.payment_status = EXPIRY_CLAIM_STATUS
        order.updated_at = now
        return True

    async def attach_payment_session(
        self, order: Order, preference_id: str, checkout_url: str
    ) -> bool:
        """Record the checkout session and move the order to ``pending_payment``."""
        return await self.transition(
            order,
            OrderStatus.PENDING_PAYMENT,
            payment_preference_id=preference_id,
            checkout_url=checkout_url,
        )

    async def _set_booking_status(
        self, booking_id: uuid.UUID, to_status: BookingStatus, from_statuses: List[BookingStatus]
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status.in_([status.value for status in from_statuses]),
                )
                .values(status=to_status.value, updated_at=utcnow())
            )
            await db.commit()
        applied = result.rowcount == 1
        if applied:
            logger.info("booking_status_changed", booking_id=str(booking_id), status=to_status.value)
        return applied

    async def cancel_booking(self, booking_id: uuid.UUID) -> bool:
        """Cancel a booking; a booking that is already cancelled or completed is left alone."""
        return await self._set_booking_status(
            booking_id,
            BookingStatus.CANCELLED,
            [BookingStatus.PENDING, BookingStatus.CONFIRMED],
        )

    async def confirm_booking(self, booking_id: uuid.UUID) -> bool:
        return await self._set_booking_status(
            booking_id, BookingStatus.CONFIRMED, [BookingStatus.PENDING]
        )
