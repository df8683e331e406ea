"""
Hosted checkout session ("payment preference") creation.

Builds the gateway request for an order and picks the checkout URL that
matches the partner's credential environment.
"""
from dataclasses import dataclass
from datetime import timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import (
    ConfigurationError,
    GatewayResponseError,
    PaymentSessionCreationFailed,
)
from marketplace_core.core.partner_accounts import CredentialEnvironment, PartnerAccount
from marketplace_core.database.models import Order
from marketplace_core.integrations.gateway_client import GatewayClient, GatewayError

logger = structlog.get_logger(__name__)

PAYER_FIELDS = ("name", "surname", "email")
ADDRESS_FIELDS = ("zip_code", "street_name", "street_number")


@dataclass(frozen=True)
class PaymentSession:
    preference_id: str
    checkout_url: str
    environment: CredentialEnvironment


def _amount(value: Any) -> float:
    # The gateway takes JSON numbers; amounts are already rounded to cents
    return float(Decimal(str(value)))


class PaymentPreferenceGateway:
    """Creates checkout sessions that carry the marketplace split when allowed."""

    def __init__(self, gateway: GatewayClient, settings: Optional[Settings] = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()

    def _items(self, order: Order) -> List[Dict[str, Any]]:
        lines = [
            {
                "id": str(item["id"]),
                "title": item["name"],
                "quantity": int(item["quantity"]),
                "unit_price": _amount(item.get("unit_net", item["unit_price"])),
                "currency_id": order.currency,
            }
            for item in order.items
        ]

        if not order.tax_included and Decimal(order.tax_amount) > 0:
            rate = f"{Decimal(order.tax_rate).normalize():f}"
            lines.append(
                {
                    "id": "tax",
                    "title": f"{self.settings.tax_line_title} {rate}%",
                    "quantity": 1,
                    "unit_price": _amount(order.tax_amount),
                    "currency_id": order.currency,
                }
            )

        if Decimal(order.shipping_cost) > 0:
            lines.append(
                {
                    "id": "shipping",
                    "title": self.settings.shipping_line_title,
                    "quantity": 1,
                    "unit_price": _amount(order.shipping_cost),
                    "currency_id": order.currency,
                }
            )
        return lines

    @staticmethod
    def _payer(order: Order) -> Optional[Dict[str, Any]]:
        source = order.payer or {}
        payer: Dict[str, Any] = {key: source[key] for key in PAYER_FIELDS if source.get(key)}

        phone = source.get("phone")
        if isinstance(phone, dict) and phone.get("number"):
            payer["phone"] = {
                "area_code": str(phone.get("area_code", "")),
                "number": str(phone["number"]),
            }

        address = order.shipping_address or source.get("address") or {}
        address = {key: str(address[key]) for key in ADDRESS_FIELDS if address.get(key)}
        if address:
            payer["address"] = address

        return payer or None

    def _back_urls(self, order: Order) -> Dict[str, str]:
        base = f"{self.settings.app_url}/payment"
        return {
            outcome: f"{base}/{outcome}?order_id={order.id}"
            for outcome in ("success", "failure", "pending")
        }

    def build_payload(self, order: Order, account: PartnerAccount) -> Dict[str, Any]:
        """
        Build the checkout session request for ``order``.

        The marketplace fee and collector fields are only added for
        production OAuth accounts; the gateway rejects them under test
        credentials.
        """
        created_at = order.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        expires_at = created_at + timedelta(minutes=self.settings.order_expiration_minutes)

        payload: Dict[str, Any] = {
            "items": self._items(order),
            "back_urls": self._back_urls(order),
            "auto_return": "approved",
            "external_reference": str(order.id),
            "notification_url": self.settings.webhook_url,
            "statement_descriptor": self.settings.statement_descriptor,
            "expires": True,
            "expiration_date_from": created_at.isoformat(timespec="milliseconds"),
            "expiration_date_to": expires_at.isoformat(timespec="milliseconds"),
            "metadata": {
                "order_id": str(order.id),
                "partner_id": str(order.partner_id),
                "order_type": order.order_type,
            },
        }

        payer = self._payer(order)
        if payer:
            payload["payer"] = payer

        if account.supports_split:
            if not account.collector_id:
                raise ConfigurationError(
                    "OAuth partner account has no collector id",
                    partner_id=str(account.partner_id),
                )
            payload["marketplace"] = self.settings.marketplace_name
            payload["marketplace_fee"] = _amount(order.commission_amount)
            payload["collector_id"] = (
                int(account.collector_id) if account.collector_id.isdigit() else account.collector_id
            )

        return payload

    async def create_preference(self, order: Order, account: PartnerAccount) -> PaymentSession:
        """
        Create the hosted checkout session for an order.

        Returns:
            PaymentSession: Preference id and the checkout URL for the account's environment

        Raises:
            PaymentSessionCreationFailed: If the gateway rejects or fails the request
            GatewayResponseError: If the response lacks the checkout URL to use
        """
        payload = self.build_payload(order, account)
        environment = account.environment

        logger.info(
            "creating_payment_preference",
            order_id=str(order.id),
            environment=environment.value,
            split=account.supports_split,
            items=len(payload["items"]),
        )

        try:
            preference = await self.gateway.create_preference(
                account.access_token, payload, idempotency_key=str(order.id)
            )
        except GatewayError as e:
            logger.error(
                "payment_preference_failed",
                order_id=str(order.id),
                status_code=e.status_code,
                error=str(e),
            )
            raise PaymentSessionCreationFailed(
                f"Payment gateway refused checkout for order {order.id}: {e}",
                status_code=e.status_code,
                order_id=str(order.id),
            ) from e

        if environment is CredentialEnvironment.TEST:
            checkout_url = preference.sandbox_init_point
        else:
            checkout_url = preference.init_point

        if not checkout_url:
            raise GatewayResponseError(
                f"Preference {preference.id} has no checkout URL for {environment.value} mode",
                order_id=str(order.id),
            )

        logger.info(
            "payment_preference_created",
            order_id=str(order.id),
            preference_id=preference.id,
            environment=environment.value,
        )
        return PaymentSession(
            preference_id=preference.id,
            checkout_url=checkout_url,
            environment=environment,
        )
