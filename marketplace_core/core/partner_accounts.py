"""
Partner payment accounts.

``PartnerAccountResolver`` loads and validates the credentials a checkout
acts with. ``PartnerConnectionService`` is the partner's own connection flow,
the only code that writes those credentials.
"""
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import ConfigurationError
from marketplace_core.database.connection import get_session_factory
from marketplace_core.database.models import Partner, utcnow
from marketplace_core.integrations.gateway_client import GatewayClient, GatewayError
from marketplace_core.integrations.gateway_models import OAuthCredentials

logger = structlog.get_logger(__name__)

TEST_TOKEN_PREFIX = "TEST-"
PRODUCTION_TOKEN_PREFIX = "APP_USR-"


class CredentialEnvironment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class ConnectionMode(str, Enum):
    OAUTH = "oauth"
    MANUAL = "manual"


def detect_environment(access_token: str) -> CredentialEnvironment:
    """
    Infer the credential environment from the token prefix.

    Raises:
        ConfigurationError: If the prefix is not one the gateway issues
    """
    if access_token.startswith(TEST_TOKEN_PREFIX):
        return CredentialEnvironment.TEST
    if access_token.startswith(PRODUCTION_TOKEN_PREFIX):
        return CredentialEnvironment.PRODUCTION
    raise ConfigurationError("Access token has an unrecognised prefix")


@dataclass(frozen=True)
class PartnerAccount:
    """A partner's fiscal settings and validated payment credentials."""

    partner_id: uuid.UUID
    business_name: str
    owner_id: Optional[uuid.UUID]
    commission_percentage: Decimal
    tax_rate: Decimal
    tax_included: bool
    access_token: str
    public_key: Optional[str]
    refresh_token: Optional[str]
    collector_id: Optional[str]
    connection_mode: ConnectionMode

    @property
    def environment(self) -> CredentialEnvironment:
        return detect_environment(self.access_token)

    @property
    def is_test(self) -> bool:
        return self.environment is CredentialEnvironment.TEST

    @property
    def supports_split(self) -> bool:
        """Marketplace fees are only accepted for production OAuth credentials."""
        return (
            self.environment is CredentialEnvironment.PRODUCTION
            and self.connection_mode is ConnectionMode.OAUTH
        )


class PartnerAccountResolver:
    """
    Loads a partner's payment account for the checkout path.

    Nothing is cached: a partner can reconnect between two checkouts.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.gateway = gateway
        self._session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    async def _load_partner(self, partner_id: uuid.UUID) -> Partner:
        async with self._session_factory() as db:
            partner = await db.get(Partner, partner_id)
        if partner is None:
            raise ConfigurationError("Partner not found", partner_id=str(partner_id))
        return partner

    def _check_token(self, partner_id: uuid.UUID, token: Optional[str]) -> str:
        if not token:
            raise ConfigurationError(
                "Partner has no payment credentials", partner_id=str(partner_id)
            )
        if len(token) < self.settings.min_access_token_length:
            raise ConfigurationError(
                "Partner access token is too short to be valid", partner_id=str(partner_id)
            )
        detect_environment(token)
        return token

    @staticmethod
    def _check_connection_mode(partner_id: uuid.UUID, value: Any) -> ConnectionMode:
        # Bundles saved before OAuth existed carry no mode at all
        try:
            return ConnectionMode(value or ConnectionMode.MANUAL.value)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown payment connection mode: {value!r}", partner_id=str(partner_id)
            ) from e

    async def resolve(self, partner_id: uuid.UUID, verify: bool = True) -> PartnerAccount:
        """
        Resolve and validate a partner's payment account.

        Args:
            partner_id: Partner to resolve
            verify: Confirm the token against the gateway identity endpoint.
                Checkout always verifies; background reconciliation reuses
                the stored token as is.

        Returns:
            PartnerAccount: Account ready to create checkout sessions

        Raises:
            ConfigurationError: If credentials are missing, implausible or rejected
        """
        partner = await self._load_partner(partner_id)
        config: Dict[str, Any] = partner.payment_config or {}

        try:
            access_token = self._check_token(partner_id, config.get("access_token"))
            connection_mode = self._check_connection_mode(
                partner_id, config.get("connection_mode")
            )
        except ConfigurationError as e:
            logger.warning(
                "partner_account_invalid", partner_id=str(partner_id), reason=e.message
            )
            raise

        collector_id = config.get("user_id")

        if verify:
            try:
                identity = await self.gateway.get_identity(access_token)
            except GatewayError as e:
                logger.warning(
                    "partner_credentials_rejected",
                    partner_id=str(partner_id),
                    status_code=e.status_code,
                    error=str(e),
                )
                raise ConfigurationError(
                    "Payment gateway rejected the partner credentials",
                    partner_id=str(partner_id),
                ) from e
            collector_id = collector_id or identity.id

        commission = partner.commission_percentage
        if commission is None:
            commission = Decimal(str(self.settings.platform_commission_percentage))

        account = PartnerAccount(
            partner_id=partner.id,
            business_name=partner.business_name,
            owner_id=partner.owner_id,
            commission_percentage=Decimal(commission),
            tax_rate=Decimal(partner.tax_rate or 0),
            tax_included=bool(partner.tax_included),
            access_token=access_token,
            public_key=config.get("public_key"),
            refresh_token=config.get("refresh_token"),
            collector_id=str(collector_id) if collector_id is not None else None,
            connection_mode=connection_mode,
        )

        logger.info(
            "partner_account_resolved",
            partner_id=str(partner_id),
            environment=account.environment.value,
            connection_mode=account.connection_mode.value,
            verified=verify,
        )
        return account


class PartnerConnectionService:
    """Stores partner credentials obtained through OAuth or entered by hand."""

    def __init__(
        self,
        gateway: GatewayClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.gateway = gateway
        self._session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    @staticmethod
    def _config_from_grant(credentials: OAuthCredentials) -> Dict[str, Any]:
        now = utcnow()
        config: Dict[str, Any] = {
            "access_token": credentials.access_token,
            "public_key": credentials.public_key,
            "refresh_token": credentials.refresh_token,
            "user_id": str(credentials.user_id) if credentials.user_id is not None else None,
            "connection_mode": ConnectionMode.OAUTH.value,
            "connected_at": now.isoformat(),
        }
        if credentials.expires_in:
            config["expires_at"] = (now + timedelta(seconds=credentials.expires_in)).isoformat()
        return config

    async def _store(self, partner_id: uuid.UUID, config: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Partner)
                .where(Partner.id == partner_id)
                .values(payment_config=config, updated_at=utcnow())
            )
            await db.commit()
        if result.rowcount != 1:
            raise ConfigurationError("Partner not found", partner_id=str(partner_id))

    async def connect_oauth(self, partner_id: uuid.UUID, code: str) -> Dict[str, Any]:
        """
        Complete the OAuth authorization-code flow for a partner.

        Returns:
            Dict[str, Any]: Connection summary (no secrets)
        """
        try:
            credentials = await self.gateway.exchange_authorization_code(code)
        except GatewayError as e:
            logger.warning(
                "partner_oauth_exchange_failed", partner_id=str(partner_id), error=str(e)
            )
            raise ConfigurationError(
                "Authorization code was rejected by the payment gateway",
                partner_id=str(partner_id),
            ) from e

        environment = detect_environment(credentials.access_token)
        await self._store(partner_id, self._config_from_grant(credentials))

        logger.info(
            "partner_oauth_connected",
            partner_id=str(partner_id),
            environment=environment.value,
        )
        return {
            "partner_id": str(partner_id),
            "connection_mode": ConnectionMode.OAUTH.value,
            "environment": environment.value,
            "collector_id": str(credentials.user_id) if credentials.user_id else None,
        }

    async def refresh(self, partner_id: uuid.UUID) -> Dict[str, Any]:
        """Renew an OAuth partner's credentials with the stored refresh token."""
        async with self._session_factory() as db:
            config = (
                await db.execute(select(Partner.payment_config).where(Partner.id == partner_id))
            ).scalar_one_or_none()
        refresh_token = (config or {}).get("refresh_token")
        if not refresh_token:
            raise ConfigurationError(
                "Partner has no refresh token; reconnect required", partner_id=str(partner_id)
            )

        try:
            credentials = await self.gateway.refresh_access_token(refresh_token)
        except GatewayError as e:
            logger.warning("partner_token_refresh_failed", partner_id=str(partner_id), error=str(e))
            raise ConfigurationError(
                "Payment gateway refused to refresh the credentials",
                partner_id=str(partner_id),
            ) from e

        await self._store(partner_id, self._config_from_grant(credentials))
        logger.info("partner_token_refreshed", partner_id=str(partner_id))
        return {
            "partner_id": str(partner_id),
            "connection_mode": ConnectionMode.OAUTH.value,
            "environment": detect_environment(credentials.access_token).value,
        }

    async def connect_manual(
        self, partner_id: uuid.UUID, access_token: str, public_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Save hand-entered credentials after checking them with the gateway."""
        if len(access_token) < self.settings.min_access_token_length:
            raise ConfigurationError("Access token is too short to be valid")
        environment = detect_environment(access_token)

        try:
            identity = await self.gateway.get_identity(access_token)
        except GatewayError as e:
            raise ConfigurationError(
                "Payment gateway rejected the credentials", partner_id=str(partner_id)
            ) from e

        await self._store(
            partner_id,
            {
                "access_token": access_token,
                "public_key": public_key,
                "user_id": str(identity.id),
                "connection_mode": ConnectionMode.MANUAL.value,
                "connected_at": utcnow().isoformat(),
            },
        )
        logger.info(
            "partner_manual_credentials_saved",
            partner_id=str(partner_id),
            environment=environment.value,
        )
        return {
            "partner_id": str(partner_id),
            "connection_mode": ConnectionMode.MANUAL.value,
            "environment": environment.value,
        }
