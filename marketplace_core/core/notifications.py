"""
Scheduled push notification dispatch.

Drains due rows from ``scheduled_notifications``. Each row is tried on the
native channel (FCM) first and on the Expo channel if that fails and the
user has an Expo token. Rows that fail on every channel are retried on
later runs until ``max_retries`` attempts have been made.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import DeliveryFailure
from marketplace_core.database.connection import get_session_factory
from marketplace_core.database.models import (
    NotificationStatus,
    ScheduledNotification,
    UserProfile,
    utcnow,
)
from marketplace_core.integrations.push_channels import PushChannel
from marketplace_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NO_TOKEN_ERROR = "No push token available"


@dataclass
class DispatchReport:
    examined: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class DeliveryTokens:
    fcm_token: Optional[str] = None
    push_token: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.fcm_token and not self.push_token


class NotificationDispatcher:
    """
    Delivers due notifications with channel fallback and bounded retry.

    Every status write is conditional on the row still being ``pending``
    with the retry count this run observed, so two dispatchers working the
    same row cannot both record an outcome for it. Delivery itself is
    at-least-once: a crash between send and write can resend on the next run.
    """

    def __init__(
        self,
        primary: PushChannel,
        fallback: PushChannel,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        send_timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.primary = primary
        self.fallback = fallback
        self._session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size or self.settings.notification_batch_size
        self.max_retries = max_retries or self.settings.notification_max_retries
        self.send_timeout = send_timeout or self.settings.notification_send_timeout_seconds
        self.concurrency = concurrency or self.settings.notification_concurrency
        self._stopping = False

        logger.info(
            "notification_dispatcher_initialized",
            primary=primary.name,
            fallback=fallback.name,
            batch_size=self.batch_size,
            max_retries=self.max_retries,
        )

    def stop(self) -> None:
        """Stop picking up new notifications."""
        self._stopping = True
        logger.info("notification_dispatcher_stopping")

    async def _fetch_due(self) -> List[ScheduledNotification]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ScheduledNotification)
                .where(
                    ScheduledNotification.status == NotificationStatus.PENDING.value,
                    ScheduledNotification.scheduled_for <= utcnow(),
                )
                .order_by(ScheduledNotification.scheduled_for)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _load_tokens(self, user_id: uuid.UUID) -> DeliveryTokens:
        async with self._session_factory() as db:
            profile = await db.get(UserProfile, user_id)
        if profile is None:
            return DeliveryTokens()
        return DeliveryTokens(fcm_token=profile.fcm_token, push_token=profile.push_token)

    async def _send_via(
        self, channel: PushChannel, token: str, notification: ScheduledNotification
    ) -> str:
        try:
            return await asyncio.wait_for(
                channel.send(token, notification.title, notification.body, notification.data),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(
                f"{channel.name} send timed out after {self.send_timeout}s", channel=channel.name
            ) from e

    async def deliver(
        self, notification: ScheduledNotification, tokens: DeliveryTokens
    ) -> Tuple[Optional[str], List[str]]:
        """
        Try each channel the user has a token for, in order.

        Returns:
            Tuple of the channel that delivered (None if none did) and the
            error message from every failed attempt
        """
        attempts = [
            (self.primary, tokens.fcm_token),
            (self.fallback, tokens.push_token),
        ]
        errors: List[str] = []

        for channel, token in attempts:
            if not token:
                continue
            try:
                await self._send_via(channel, token, notification)
                return channel.name, errors
            except DeliveryFailure as e:
                logger.warning(
                    "notification_channel_failed",
                    notification_id=str(notification.id),
                    channel=channel.name,
                    error=e.message,
                )
                errors.append(f"{channel.name}: {e.message}")
        return None, errors

    async def _record(
        self, notification: ScheduledNotification, **values: Any
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ScheduledNotification)
                .where(
                    ScheduledNotification.id == notification.id,
                    ScheduledNotification.status == NotificationStatus.PENDING.value,
                    ScheduledNotification.retry_count == notification.retry_count,
                )
                .values(**values)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.info("notification_update_stale", notification_id=str(notification.id))
            return False
        return True

    async def _dispatch_one(
        self, notification: ScheduledNotification, report: DispatchReport
    ) -> None:
        log = logger.bind(
            notification_id=str(notification.id),
            user_id=str(notification.user_id),
            retry_count=notification.retry_count,
        )
        tokens = await self._load_tokens(notification.user_id)

        if tokens.empty:
            # Nothing a later run can change until the user registers a device
            if await self._record(
                notification, status=NotificationStatus.FAILED.value, error_message=NO_TOKEN_ERROR
            ):
                report.failed += 1
                metrics.record_notification("failed")
                log.warning("notification_without_token")
            return

        channel, errors = await self.deliver(notification, tokens)

        if channel is not None:
            if await self._record(
                notification,
                status=NotificationStatus.SENT.value,
                sent_at=utcnow(),
                delivery_channel=channel,
                error_message=None,
            ):
                report.sent += 1
                metrics.record_notification("sent", channel)
                log.info("notification_sent", channel=channel)
            return

        retry_count = notification.retry_count + 1
        error_message = "; ".join(errors)
        if retry_count >= self.max_retries:
            status = NotificationStatus.FAILED
        else:
            status = NotificationStatus.PENDING

        if await self._record(
            notification,
            status=status.value,
            retry_count=retry_count,
            error_message=error_message,
        ):
            report.errors.append({"notification_id": str(notification.id), "error": error_message})
            if status is NotificationStatus.FAILED:
                report.failed += 1
                metrics.record_notification("failed")
                log.error("notification_failed", attempts=retry_count, error=error_message)
            else:
                report.retried += 1
                metrics.record_notification("retry")
                log.warning("notification_retry_scheduled", attempts=retry_count)

    async def run_once(self) -> DispatchReport:
        """
        Dispatch one batch of due notifications.

        Returns:
            DispatchReport: Per-outcome counts for the batch
        """
        start_time = time.time()
        report = DispatchReport()
        notifications = await self._fetch_due()
        report.examined = len(notifications)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(notification: ScheduledNotification) -> None:
            async with semaphore:
                if self._stopping:
                    report.skipped += 1
                    return
                try:
                    await self._dispatch_one(notification, report)
                except Exception as e:
                    logger.error(
                        "notification_dispatch_error",
                        notification_id=str(notification.id),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    report.errors.append(
                        {"notification_id": str(notification.id), "error": str(e)}
                    )

        await asyncio.gather(*(guarded(notification) for notification in notifications))

        duration = time.time() - start_time
        metrics.record_dispatch_duration(duration)
        logger.info(
            "notification_dispatch_completed",
            examined=report.examined,
            sent=report.sent,
            retried=report.retried,
            failed=report.failed,
            duration_seconds=duration,
        )
        return report

    async def start(self, interval_seconds: Optional[float] = None) -> None:
        """Dispatch on a fixed interval until ``stop()`` is called."""
        interval = interval_seconds or self.settings.notification_interval_seconds
        logger.info("notification_dispatcher_started", interval_seconds=interval)

        while not self._stopping:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("notification_dispatch_run_error", error=str(e))
            await asyncio.sleep(interval)

        logger.info("notification_dispatcher_stopped")
