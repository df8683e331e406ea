"""
Checkout orchestration.

resolve partner -> price -> create order -> create payment session -> attach.

Order creation and session creation run as a saga: if the session cannot
be created, the order (and booking) is rolled back. Once a session exists
the order is never rolled back; any later failure leaves it in
``payment_failed`` for webhook or manual reconciliation.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.background import BackgroundTasks
from marketplace_core.core.commission import CommissionTaxEngine, LineItem, OrderPricing
from marketplace_core.core.exceptions import (
    InvalidStateTransition,
    MarketplaceError,
    PaymentSessionCreationFailed,
    ValidationError,
)
from marketplace_core.core.orders import BookingDraft, OrderDraft, OrderLifecycleManager
from marketplace_core.core.partner_accounts import PartnerAccount, PartnerAccountResolver
from marketplace_core.core.saga import Saga
from marketplace_core.database.connection import get_session_factory
from marketplace_core.database.models import (
    Order,
    OrderStatus,
    OrderType,
    ScheduledNotification,
    utcnow,
)
from marketplace_core.integrations.preferences import PaymentPreferenceGateway, PaymentSession
from marketplace_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CheckoutCommand:
    """A customer's request to pay for items from one partner."""

    partner_id: uuid.UUID
    customer_id: uuid.UUID
    order_type: OrderType
    items: List[LineItem]
    shipping_cost: Decimal = Decimal("0")
    currency: Optional[str] = None
    payer: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    booking: Optional[BookingDraft] = None


@dataclass(frozen=True)
class CheckoutResult:
    order_id: uuid.UUID
    status: str
    preference_id: str
    checkout_url: str
    environment: str
    total_amount: Decimal
    commission_amount: Decimal
    partner_amount: Decimal
    booking_id: Optional[uuid.UUID] = None


class CheckoutService:
    """Runs the checkout path for one partner's order."""

    def __init__(
        self,
        resolver: PartnerAccountResolver,
        lifecycle: OrderLifecycleManager,
        preferences: PaymentPreferenceGateway,
        engine: Optional[CommissionTaxEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        background: Optional[BackgroundTasks] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.preferences = preferences
        self.engine = engine or CommissionTaxEngine()
        self._session_factory = session_factory or get_session_factory()
        self.background = background or BackgroundTasks()
        self.settings = settings or get_settings()

    @staticmethod
    def _validate(command: CheckoutCommand) -> None:
        """
        Reject malformed checkout input before anything else happens.

        Raises:
            ValidationError: On missing items, bad amounts or a missing booking
        """
        if not command.items:
            raise ValidationError("An order needs at least one item")
        for item in command.items:
            item.validate()
        if command.shipping_cost < 0:
            raise ValidationError("Shipping cost must not be negative")
        if command.currency is not None and len(command.currency) != 3:
            raise ValidationError("Currency must be a 3-letter code")
        if command.order_type is OrderType.SERVICE_BOOKING and command.booking is None:
            raise ValidationError("Service bookings need a booking slot")
        if command.order_type is OrderType.PRODUCT_PURCHASE and command.booking is not None:
            raise ValidationError("Product purchases cannot carry a booking")

    def _draft(
        self, command: CheckoutCommand, account: PartnerAccount, pricing: OrderPricing
    ) -> OrderDraft:
        currency = (command.currency or self.settings.default_currency).upper()
        return OrderDraft(
            partner_id=account.partner_id,
            customer_id=command.customer_id,
            order_type=command.order_type,
            items=pricing.item_rows(command.items, currency),
            currency=currency,
            subtotal=pricing.tax.subtotal,
            tax_amount=pricing.tax.tax_amount,
            tax_rate=pricing.tax.tax_rate,
            tax_included=pricing.tax.tax_included,
            shipping_cost=pricing.shipping_cost,
            total_amount=pricing.total_amount,
            commission_percentage=pricing.commission.commission_percentage,
            commission_amount=pricing.commission.commission_amount,
            partner_amount=pricing.commission.partner_amount,
            shipping_address=command.shipping_address,
            payer=command.payer,
            booking=command.booking,
        )

    async def checkout(self, command: CheckoutCommand) -> CheckoutResult:
        """
        Create an order and its hosted checkout session.

        Returns:
            CheckoutResult: Order id and the checkout URL to send the customer to

        Raises:
            ValidationError: Malformed input, nothing written
            ConfigurationError: Partner cannot take payments, nothing written
            PaymentSessionCreationFailed: Gateway refused the session or did not answer
                in time, order rolled back
            GatewayResponseError: Session response unusable, order rolled back
        """
        start_time = time.time()
        log = logger.bind(partner_id=str(command.partner_id), customer_id=str(command.customer_id))

        try:
            self._validate(command)
            account = await self.resolver.resolve(command.partner_id)
            pricing = self.engine.price_order(
                command.items,
                account.tax_rate,
                account.tax_included,
                command.shipping_cost,
                account.commission_percentage,
            )
        except MarketplaceError as e:
            metrics.record_checkout("rejected", time.time() - start_time)
            log.warning("checkout_rejected", error_code=e.error_code, error=e.message)
            raise

        draft = self._draft(command, account, pricing)

        async def create_order(ctx: Dict[str, Any]) -> Order:
            return await self.lifecycle.create_order(draft)

        async def rollback_order(ctx: Dict[str, Any], order: Order) -> None:
            await self.lifecycle.rollback(order.id, order.booking_id)

        async def create_session(ctx: Dict[str, Any]) -> PaymentSession:
            return await self.preferences.create_preference(
                ctx["create_order_result"], account
            )

        saga = Saga(name="checkout")
        saga.add_step("create_order", create_order, rollback_order)
        saga.add_step(
            "create_session",
            create_session,
            timeout_seconds=self.settings.checkout_session_timeout_seconds,
        )

        try:
            context = await saga.execute()
        except asyncio.TimeoutError as e:
            metrics.record_checkout("rolled_back", time.time() - start_time)
            log.error(
                "checkout_session_timed_out",
                timeout_seconds=self.settings.checkout_session_timeout_seconds,
            )
            raise PaymentSessionCreationFailed(
                "Payment gateway did not create the checkout session in time",
                partner_id=str(command.partner_id),
            ) from e
        except Exception:
            metrics.record_checkout("rolled_back", time.time() - start_time)
            raise

        order: Order = context["create_order_result"]
        session: PaymentSession = context["create_session_result"]
        await self._attach(order, session, start_time)

        metrics.record_checkout("created", time.time() - start_time)
        metrics.record_commission(order.currency, float(order.commission_amount))
        log.info(
            "checkout_completed",
            order_id=str(order.id),
            preference_id=session.preference_id,
            environment=session.environment.value,
            total_amount=str(order.total_amount),
            commission_amount=str(order.commission_amount),
        )

        self.background.submit(
            f"notify_partner:{order.id}", self._notify_partner(account, order)
        )

        return CheckoutResult(
            order_id=order.id,
            status=order.status,
            preference_id=session.preference_id,
            checkout_url=session.checkout_url,
            environment=session.environment.value,
            total_amount=order.total_amount,
            commission_amount=order.commission_amount,
            partner_amount=order.partner_amount,
            booking_id=order.booking_id,
        )

    async def _attach(self, order: Order, session: PaymentSession, start_time: float) -> None:
        """Attach the session; from here on failures mark the order instead of deleting it."""
        try:
            attached = await self.lifecycle.attach_payment_session(
                order, session.preference_id, session.checkout_url
            )
            if not attached:
                raise InvalidStateTransition(
                    f"Order {order.id} changed while its payment session was being created",
                    order_id=str(order.id),
                )
        except Exception as e:
            metrics.record_checkout("payment_failed", time.time() - start_time)
            logger.error(
                "checkout_session_attach_failed",
                order_id=str(order.id),
                preference_id=session.preference_id,
                error=str(e),
            )
            try:
                await self._mark_payment_failed(order, session)
            except Exception as mark_error:
                logger.error(
                    "checkout_payment_failed_not_recorded",
                    order_id=str(order.id),
                    error=str(mark_error),
                )
            raise

    async def _mark_payment_failed(self, order: Order, session: PaymentSession) -> None:
        current = await self.lifecycle.get_order(order.id)
        if current is None or not self.lifecycle.can_transition(
            OrderStatus(current.status), OrderStatus.PAYMENT_FAILED
        ):
            return
        await self.lifecycle.transition(
            current,
            OrderStatus.PAYMENT_FAILED,
            payment_preference_id=session.preference_id,
            payment_status="session_not_attached",
        )

    async def _notify_partner(self, account: PartnerAccount, order: Order) -> None:
        """Queue a push notification telling the partner about the new order."""
        if account.owner_id is None:
            return

        now = utcnow()
        async with self._session_factory() as db:
            db.add(
                ScheduledNotification(
                    user_id=account.owner_id,
                    title="New order",
                    body=f"New order for {order.total_amount} {order.currency} awaiting payment",
                    data={
                        "type": "new_order",
                        "order_id": str(order.id),
                        "partner_id": str(account.partner_id),
                    },
                    scheduled_for=now,
                    created_at=now,
                )
            )
            await db.commit()
