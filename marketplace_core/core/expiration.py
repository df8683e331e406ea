"""
Expiration sweep for abandoned checkouts.

Finds orders still waiting for payment past the timeout and, per order:
1. cancels the booking (if any)
2. claims the order, then cancels any pending gateway payment tied to it
   (best effort)
3. cancels the order

Every write is conditional, so re-running the sweep, or running it on two
instances at once, cancels each order exactly once. Only the instance
whose claim in step 2 applies talks to the gateway; the others go straight
to step 3.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import MarketplaceError, ReconciliationFailure
from marketplace_core.core.orders import OrderLifecycleManager
from marketplace_core.core.partner_accounts import PartnerAccountResolver
from marketplace_core.database.connection import get_session_factory
from marketplace_core.database.models import Order, OrderStatus, utcnow
from marketplace_core.integrations.gateway_client import GatewayClient, GatewayError
from marketplace_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EXPIRABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PENDING_PAYMENT.value)
CANCELLABLE_PAYMENT_STATUSES = frozenset({"pending", "in_process"})


@dataclass
class SweepReport:
    examined: int = 0
    cancelled: int = 0
    bookings_cancelled: int = 0
    payments_cancelled: int = 0
    skipped: int = 0
    cancelled_order_ids: List[uuid.UUID] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "cancelled": self.cancelled,
            "bookings_cancelled": self.bookings_cancelled,
            "payments_cancelled": self.payments_cancelled,
            "skipped": self.skipped,
            "cancelled_order_ids": [str(order_id) for order_id in self.cancelled_order_ids],
            "errors": self.errors,
        }


class ExpirationSweeper:
    """
    Cancels orders whose checkout was abandoned.

    Orders are processed concurrently up to ``concurrency``, each with its
    own database sessions. ``stop()`` stops new orders from being picked
    up; orders already in progress finish.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycleManager,
        resolver: PartnerAccountResolver,
        gateway: GatewayClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        timeout_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.gateway = gateway
        self._session_factory = session_factory or get_session_factory()
        self.timeout_minutes = timeout_minutes or self.settings.order_expiration_minutes
        self.batch_size = batch_size or self.settings.sweep_batch_size
        self.concurrency = concurrency or self.settings.sweep_concurrency
        self.cancel_timeout = self.settings.gateway_cancel_timeout_seconds
        # Outlives the bounded gateway step, so a live claim is never taken over
        self.claim_lease = timedelta(seconds=self.cancel_timeout * 2)
        self._stopping = False

        logger.info(
            "expiration_sweeper_initialized",
            timeout_minutes=self.timeout_minutes,
            batch_size=self.batch_size,
        )

    def stop(self) -> None:
        """Stop picking up new orders."""
        self._stopping = True
        logger.info("expiration_sweeper_stopping")

    async def _fetch_expired(self) -> List[Order]:
        cutoff = utcnow() - timedelta(minutes=self.timeout_minutes)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.status.in_(EXPIRABLE_STATUSES), Order.created_at < cutoff)
                .order_by(Order.created_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _cancel_gateway_payments(self, order: Order) -> int:
        """
        Cancel pending gateway payments for ``order``.

        Raises:
            ReconciliationFailure: If the lookup or a cancellation fails or times out
        """
        try:
            account = await self.resolver.resolve(order.partner_id, verify=False)

            async def search_and_cancel() -> int:
                cancelled = 0
                payments = await self.gateway.search_payments(
                    account.access_token, str(order.id)
                )
                for payment in payments:
                    if payment.status in CANCELLABLE_PAYMENT_STATUSES:
                        await self.gateway.cancel_payment(account.access_token, str(payment.id))
                        cancelled += 1
                return cancelled

            return await asyncio.wait_for(search_and_cancel(), timeout=self.cancel_timeout)
        except asyncio.TimeoutError as e:
            raise ReconciliationFailure(
                "Gateway payment cancellation timed out", step="gateway", order_id=str(order.id)
            ) from e
        except (GatewayError, MarketplaceError) as e:
            raise ReconciliationFailure(
                f"Gateway payment cancellation failed: {e}", step="gateway", order_id=str(order.id)
            ) from e

    async def _expire_order(self, order: Order, report: SweepReport) -> None:
        log = logger.bind(order_id=str(order.id), status=order.status)

        if order.booking_id is not None:
            if await self.lifecycle.cancel_booking(order.booking_id):
                report.bookings_cancelled += 1

        if order.payment_preference_id:
            if await self.lifecycle.claim_expiry(order, self.claim_lease):
                try:
                    report.payments_cancelled += await self._cancel_gateway_payments(order)
                except ReconciliationFailure as e:
                    # The payment may never have been started; the order is cancelled regardless
                    metrics.record_sweep_failure("gateway")
                    log.warning("expired_order_payment_not_cancelled", error=e.message)
                    report.errors.append(
                        {"order_id": str(order.id), "step": e.step, "error": e.message}
                    )
            else:
                log.info("expired_order_claimed_elsewhere")

        if await self.lifecycle.transition(
            order, OrderStatus.CANCELLED, payment_status="cancelled"
        ):
            report.cancelled += 1
            report.cancelled_order_ids.append(order.id)
            log.info("expired_order_cancelled")

    async def run_once(self) -> SweepReport:
        """
        Run one sweep over the oldest expired orders.

        Returns:
            SweepReport: Counts of what was cancelled and per-order errors
        """
        start_time = time.time()
        report = SweepReport()
        orders = await self._fetch_expired()
        report.examined = len(orders)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(order: Order) -> None:
            async with semaphore:
                if self._stopping:
                    report.skipped += 1
                    return
                try:
                    await self._expire_order(order, report)
                except Exception as e:
                    metrics.record_sweep_failure("order")
                    logger.error(
                        "expired_order_failed",
                        order_id=str(order.id),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    report.errors.append(
                        {"order_id": str(order.id), "step": "order", "error": str(e)}
                    )

        await asyncio.gather(*(guarded(order) for order in orders))

        duration = time.time() - start_time
        metrics.record_sweep(report.cancelled, duration)
        logger.info(
            "expiration_sweep_completed",
            examined=report.examined,
            cancelled=report.cancelled,
            errors=len(report.errors),
            duration_seconds=duration,
        )
        return report

    async def start(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep on a fixed interval until ``stop()`` is called."""
        interval = interval_seconds or self.settings.sweep_interval_seconds
        logger.info("expiration_sweeper_started", interval_seconds=interval)

        while not self._stopping:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("expiration_sweep_error", error=str(e))
            await asyncio.sleep(interval)

        logger.info("expiration_sweeper_stopped")
