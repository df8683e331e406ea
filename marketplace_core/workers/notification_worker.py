"""
Notification dispatch background worker.

Drains due scheduled notifications every ``notification_interval_seconds``.
"""
import asyncio
import signal
from typing import Any, Optional

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.notifications import NotificationDispatcher
from marketplace_core.database.connection import close_db, get_session_factory
from marketplace_core.integrations.push_channels import ExpoChannel, FcmChannel
from marketplace_core.monitoring.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_dispatcher(settings: Optional[Settings] = None) -> NotificationDispatcher:
    """Wire a ``NotificationDispatcher`` with FCM as primary and Expo as fallback."""
    settings = settings or get_settings()
    return NotificationDispatcher(
        primary=FcmChannel(settings),
        fallback=ExpoChannel(settings),
        session_factory=get_session_factory(),
        settings=settings,
    )


async def start_notification_worker() -> None:
    """
    Start the notification worker.

    Runs until SIGINT/SIGTERM; sends already in flight are completed.
    """
    setup_logging()
    settings = get_settings()

    logger.info(
        "notification_worker_starting",
        interval_seconds=settings.notification_interval_seconds,
    )

    dispatcher = build_dispatcher(settings)
    if not dispatcher.primary.configured:
        logger.warning("fcm_not_configured_using_expo_only")

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("notification_worker_shutdown_signal_received", signal=sig)
        dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await dispatcher.start(settings.notification_interval_seconds)
    except Exception as e:
        logger.error("notification_worker_error", error=str(e))
        raise
    finally:
        await dispatcher.primary.aclose()
        await dispatcher.fallback.aclose()
        await close_db()
        logger.info("notification_worker_stopped")


def main() -> None:
    asyncio.run(start_notification_worker())


if __name__ == "__main__":
    main()
