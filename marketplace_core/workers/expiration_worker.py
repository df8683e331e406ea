"""
Expiration sweep background worker.

Cancels abandoned checkouts every ``sweep_interval_seconds``.
"""
import asyncio
import signal
from typing import Any, Optional

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.expiration import ExpirationSweeper
from marketplace_core.core.orders import OrderLifecycleManager
from marketplace_core.core.partner_accounts import PartnerAccountResolver
from marketplace_core.database.connection import close_db, get_session_factory
from marketplace_core.integrations.gateway_client import GatewayClient
from marketplace_core.monitoring.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_sweeper(
    gateway: GatewayClient, settings: Optional[Settings] = None
) -> ExpirationSweeper:
    """Wire an ``ExpirationSweeper`` against the configured database."""
    settings = settings or get_settings()
    session_factory = get_session_factory()
    return ExpirationSweeper(
        lifecycle=OrderLifecycleManager(session_factory),
        resolver=PartnerAccountResolver(gateway, session_factory, settings),
        gateway=gateway,
        session_factory=session_factory,
        settings=settings,
    )


async def start_expiration_worker() -> None:
    """
    Start the expiration worker.

    Runs until SIGINT/SIGTERM; the sweep in progress is allowed to finish.
    """
    setup_logging()
    settings = get_settings()

    logger.info("expiration_worker_starting", interval_seconds=settings.sweep_interval_seconds)

    gateway = GatewayClient(settings)
    sweeper = build_sweeper(gateway, settings)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiration_worker_shutdown_signal_received", signal=sig)
        sweeper.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await sweeper.start(settings.sweep_interval_seconds)
    except Exception as e:
        logger.error("expiration_worker_error", error=str(e))
        raise
    finally:
        await gateway.aclose()
        await close_db()
        logger.info("expiration_worker_stopped")


def main() -> None:
    asyncio.run(start_expiration_worker())


if __name__ == "__main__":
    main()
