"""
Tests for partner account resolution and the partner connection flow.
"""
import uuid
from decimal import Decimal
from typing import Any

import pytest

from marketplace_core.core.exceptions import ConfigurationError
from marketplace_core.core.partner_accounts import (
    ConnectionMode,
    CredentialEnvironment,
    PartnerAccountResolver,
    PartnerConnectionService,
    detect_environment,
)
from marketplace_core.database.models import Partner

from .helpers import COLLECTOR_ID, PRODUCTION_TOKEN, TEST_TOKEN, create_partner


class TestDetectEnvironment:
    @pytest.mark.unit
    def test_prefixes(self) -> None:
        assert detect_environment(TEST_TOKEN) is CredentialEnvironment.TEST
        assert detect_environment(PRODUCTION_TOKEN) is CredentialEnvironment.PRODUCTION

    @pytest.mark.unit
    def test_unknown_prefix_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="prefix"):
            detect_environment("sk_live_0123456789abcdefghij")


class TestPartnerAccountResolver:
    """Test suite for PartnerAccountResolver."""

    @pytest.mark.asyncio
    async def test_resolves_verified_account(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token=TEST_TOKEN)
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        account = await resolver.resolve(partner.id)

        assert account.environment is CredentialEnvironment.TEST
        assert account.connection_mode is ConnectionMode.MANUAL
        assert account.collector_id == str(COLLECTOR_ID)
        assert account.tax_rate == Decimal("22")
        assert len(fake_gateway.calls("GET", "/users/me")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_connection_mode_means_manual(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, connection_mode=None)
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        account = await resolver.resolve(partner.id)

        assert account.connection_mode is ConnectionMode.MANUAL

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_connection_mode_is_a_configuration_error(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, connection_mode="marketplace")
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="connection mode"):
            await resolver.resolve(partner.id)
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_platform_commission_is_the_default(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory)
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        account = await resolver.resolve(partner.id)

        assert account.commission_percentage == Decimal("5.0")

    @pytest.mark.asyncio
    async def test_partner_commission_override(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, commission_percentage=Decimal("12.5"))
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        account = await resolver.resolve(partner.id)

        assert account.commission_percentage == Decimal("12.5")

    @pytest.mark.asyncio
    async def test_missing_partner(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="not found"):
            await resolver.resolve(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_missing_credentials(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token=None)
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="no payment credentials"):
            await resolver.resolve(partner.id)
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_short_token_is_rejected_without_calling_gateway(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token="TEST-short")
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="too short"):
            await resolver.resolve(partner.id)
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_gateway_rejection(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        fake_gateway.identity_status = 401
        partner = await create_partner(session_factory)
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="rejected"):
            await resolver.resolve(partner.id)

    @pytest.mark.asyncio
    async def test_unverified_resolve_skips_identity_call(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, user_id="555")
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)

        account = await resolver.resolve(partner.id, verify=False)

        assert account.collector_id == "555"
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_split_only_for_production_oauth(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)
        cases = [
            (TEST_TOKEN, "oauth", False),
            (TEST_TOKEN, "manual", False),
            (PRODUCTION_TOKEN, "manual", False),
            (PRODUCTION_TOKEN, "oauth", True),
        ]

        for token, mode, expected in cases:
            partner = await create_partner(session_factory, token, connection_mode=mode)
            account = await resolver.resolve(partner.id)
            assert account.supports_split is expected, (token, mode)


class TestPartnerConnectionService:
    """Test suite for the partner connection flow."""

    @pytest.mark.asyncio
    async def test_oauth_connection_stores_credentials(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token=None)
        service = PartnerConnectionService(gateway_client, session_factory, test_settings)

        result = await service.connect_oauth(partner.id, "auth-code")

        assert result["connection_mode"] == "oauth"
        assert result["environment"] == "production"
        assert result["collector_id"] == str(COLLECTOR_ID)

        async with session_factory() as db:
            stored = await db.get(Partner, partner.id)
        assert stored.payment_config["access_token"] == PRODUCTION_TOKEN
        assert stored.payment_config["refresh_token"] == "TG-refresh-token"
        assert stored.payment_config["user_id"] == str(COLLECTOR_ID)
        assert "expires_at" in stored.payment_config

        request = fake_gateway.calls("POST", "/oauth/token")[0]
        assert b'"grant_type":"authorization_code"' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_rejected_code(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        fake_gateway.oauth_status = 400
        partner = await create_partner(session_factory, access_token=None)
        service = PartnerConnectionService(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="Authorization code"):
            await service.connect_oauth(partner.id, "bad-code")

        async with session_factory() as db:
            stored = await db.get(Partner, partner.id)
        assert stored.payment_config is None

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory)
        service = PartnerConnectionService(gateway_client, session_factory, test_settings)

        with pytest.raises(ConfigurationError, match="refresh token"):
            await service.refresh(partner.id)

    @pytest.mark.asyncio
    async def test_refresh_replaces_credentials(
        self, session_factory: Any, gateway_client: Any, fake_gateway: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token=None)
        service = PartnerConnectionService(gateway_client, session_factory, test_settings)
        await service.connect_oauth(partner.id, "auth-code")

        result = await service.refresh(partner.id)

        assert result["connection_mode"] == "oauth"
        assert len(fake_gateway.calls("POST", "/oauth/token")) == 2

    @pytest.mark.asyncio
    async def test_manual_credentials_are_verified(
        self, session_factory: Any, gateway_client: Any, test_settings: Any
    ) -> None:
        partner = await create_partner(session_factory, access_token=None)
        service = PartnerConnectionService(gateway_client, session_factory, test_settings)

        await service.connect_manual(partner.id, TEST_TOKEN, "TEST-public-key")

        resolver = PartnerAccountResolver(gateway_client, session_factory, test_settings)
        account = await resolver.resolve(partner.id, verify=False)
        assert account.connection_mode is ConnectionMode.MANUAL
        assert account.public_key == "TEST-public-key"
