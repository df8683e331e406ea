"""
Service wiring for the API.

Everything the routes need is built once at startup and kept on
``app.state.services``; routes receive it through ``get_services``.
"""
import hmac
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.config import Settings
from marketplace_core.core.background import BackgroundTasks
from marketplace_core.core.checkout import CheckoutService
from marketplace_core.core.expiration import ExpirationSweeper
from marketplace_core.core.notifications import NotificationDispatcher
from marketplace_core.core.orders import OrderLifecycleManager
from marketplace_core.core.partner_accounts import (
    PartnerAccountResolver,
    PartnerConnectionService,
)
from marketplace_core.core.payment_reconciler import PaymentReconciler
from marketplace_core.integrations.gateway_client import GatewayClient
from marketplace_core.integrations.preferences import PaymentPreferenceGateway
from marketplace_core.integrations.push_channels import ExpoChannel, FcmChannel, PushChannel
from marketplace_core.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    gateway: GatewayClient
    primary_channel: PushChannel
    fallback_channel: PushChannel
    background: BackgroundTasks
    lifecycle: OrderLifecycleManager
    checkout: CheckoutService
    connections: PartnerConnectionService
    reconciler: PaymentReconciler
    sweeper: ExpirationSweeper
    dispatcher: NotificationDispatcher
    health: HealthCheck

    async def aclose(self) -> None:
        await self.background.drain()
        await self.gateway.aclose()
        await self.primary_channel.aclose()
        await self.fallback_channel.aclose()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Optional[GatewayClient] = None,
    primary_channel: Optional[PushChannel] = None,
    fallback_channel: Optional[PushChannel] = None,
) -> Services:
    """Wire every component against one session factory and gateway client."""
    gateway = gateway or GatewayClient(settings)
    primary_channel = primary_channel or FcmChannel(settings)
    fallback_channel = fallback_channel or ExpoChannel(settings)
    background = BackgroundTasks()

    lifecycle = OrderLifecycleManager(session_factory)
    resolver = PartnerAccountResolver(gateway, session_factory, settings)

    return Services(
        settings=settings,
        gateway=gateway,
        primary_channel=primary_channel,
        fallback_channel=fallback_channel,
        background=background,
        lifecycle=lifecycle,
        checkout=CheckoutService(
            resolver=resolver,
            lifecycle=lifecycle,
            preferences=PaymentPreferenceGateway(gateway, settings),
            session_factory=session_factory,
            background=background,
            settings=settings,
        ),
        connections=PartnerConnectionService(gateway, session_factory, settings),
        reconciler=PaymentReconciler(gateway, lifecycle, settings),
        sweeper=ExpirationSweeper(
            lifecycle=lifecycle,
            resolver=resolver,
            gateway=gateway,
            session_factory=session_factory,
            settings=settings,
        ),
        dispatcher=NotificationDispatcher(
            primary=primary_channel,
            fallback=fallback_channel,
            session_factory=session_factory,
            settings=settings,
        ),
        health=HealthCheck(session_factory, settings),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_cron_secret(request: Request) -> None:
    """
    Guard the scheduler trigger endpoints.

    Without a configured secret the triggers are open outside production
    and refused in production.
    """
    settings: Settings = request.app.state.services.settings
    expected = settings.cron_secret

    if not expected:
        if settings.is_production:
            logger.error("cron_secret_not_configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Job triggers are not configured",
            )
        return

    provided = request.headers.get(settings.cron_secret_header, "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("cron_secret_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
