"""Fakes and factories shared by the test modules."""
import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from google.auth import credentials
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_core.core.orders import BookingDraft, OrderDraft, OrderLifecycleManager
from marketplace_core.database.models import Order, OrderType, Partner, UserProfile, utcnow

TEST_TOKEN = "TEST-1234567890123456-010203-partner-token"
PRODUCTION_TOKEN = "APP_USR-1234567890123456-010203-partner-token"
PLATFORM_TOKEN = "APP_USR-9999999999999999-010203-platform-token"
COLLECTOR_ID = 123456789


@dataclass
class FakeGateway:
    """
    In-memory stand-in for the payment gateway REST API.

    Tests tweak the public attributes to script responses; every request is
    appended to ``requests``.
    """

    identity_status: int = 200
    preference_status: int = 201
    preference_body: Dict[str, Any] = field(
        default_factory=lambda: {
            "id": "pref-123",
            "init_point": "https://gateway.test/checkout/live?pref_id=pref-123",
            "sandbox_init_point": "https://sandbox.gateway.test/checkout?pref_id=pref-123",
        }
    )
    oauth_status: int = 200
    oauth_body: Dict[str, Any] = field(
        default_factory=lambda: {
            "access_token": PRODUCTION_TOKEN,
            "public_key": "APP_USR-public-key",
            "refresh_token": "TG-refresh-token",
            "user_id": COLLECTOR_ID,
            "expires_in": 15552000,
            "live_mode": True,
        }
    )
    search_status: int = 200
    payments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    requests: List[httpx.Request] = field(default_factory=list)

    def add_payment(
        self, payment_id: str, status: str, external_reference: str
    ) -> Dict[str, Any]:
        payment = {
            "id": int(payment_id),
            "status": status,
            "status_detail": status,
            "external_reference": external_reference,
            "transaction_amount": 2440.0,
            "currency_id": "UYU",
        }
        self.payments[payment_id] = payment
        return payment

    def calls(self, method: str, path_prefix: str) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.startswith(path_prefix)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/users/me":
            if self.identity_status != 200:
                return httpx.Response(self.identity_status, json={"message": "invalid_token"})
            return httpx.Response(200, json={"id": COLLECTOR_ID, "nickname": "PARTNER"})

        if path == "/oauth/token":
            if self.oauth_status != 200:
                return httpx.Response(self.oauth_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.oauth_body)

        if path == "/checkout/preferences":
            if self.preference_status >= 300:
                return httpx.Response(self.preference_status, json={"message": "bad request"})
            return httpx.Response(self.preference_status, json=self.preference_body)

        if path == "/v1/payments/search":
            if self.search_status != 200:
                return httpx.Response(self.search_status, json={"message": "forbidden"})
            reference = request.url.params.get("external_reference")
            results = [
                payment
                for payment in self.payments.values()
                if payment["external_reference"] == reference
            ]
            return httpx.Response(200, json={"results": results})

        if path.startswith("/v1/payments/"):
            payment_id = path.rsplit("/", 1)[-1]
            payment = self.payments.get(payment_id)
            if payment is None:
                return httpx.Response(404, json={"message": "payment not found"})
            if request.method == "PUT":
                payment["status"] = json.loads(request.content)["status"]
            return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"message": "not found"})


def delayed(
    handler: Callable[[httpx.Request], httpx.Response], seconds: float
) -> Callable[[httpx.Request], Awaitable[httpx.Response]]:
    """Wrap a MockTransport handler so every response arrives ``seconds`` late."""

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(seconds)
        return handler(request)

    return slow_handler


class RefreshingCredentials(credentials.Credentials):
    """Google credentials whose refresh mints numbered hour-long tokens."""

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        super().__init__()
        self.refreshes = 0
        self.fail_with = fail_with

    def refresh(self, request: Any) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.refreshes += 1
        self.token = f"minted-{self.refreshes}"
        self.expiry = google_utcnow() + timedelta(hours=1)


def google_utcnow() -> datetime:
    """Naive UTC now, the form google-auth keeps token expiries in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class FakePushProvider:
    """Scripted push provider; ``responder`` decides each response."""

    responder: Callable[[httpx.Request], httpx.Response]
    requests: List[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def fcm_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"name": "projects/demo-project/messages/0:1"})


def fcm_unregistered(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, json={"error": {"status": "NOT_FOUND", "message": "UNREGISTERED"}})


def expo_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": {"status": "ok", "id": "ticket-1"}})


def expo_device_not_registered(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "data": [
                {
                    "status": "error",
                    "message": "not a registered push token",
                    "details": {"error": "DeviceNotRegistered"},
                }
            ]
        },
    )


async def create_partner(
    session_factory: async_sessionmaker[AsyncSession],
    access_token: Optional[str] = TEST_TOKEN,
    connection_mode: Optional[str] = "manual",
    user_id: Optional[str] = None,
    commission_percentage: Optional[Decimal] = None,
    tax_rate: Decimal = Decimal("22"),
    tax_included: bool = False,
    owner_id: Optional[uuid.UUID] = None,
) -> Partner:
    """Insert a partner with the given credential bundle."""
    config: Optional[Dict[str, Any]] = None
    if access_token is not None:
        config = {
            "access_token": access_token,
            "public_key": "public-key",
            "connection_mode": connection_mode,
        }
        if user_id is not None:
            config["user_id"] = user_id

    partner = Partner(
        id=uuid.uuid4(),
        owner_id=owner_id,
        business_name="Happy Paws",
        commission_percentage=commission_percentage,
        tax_rate=tax_rate,
        tax_included=tax_included,
        payment_config=config,
    )
    async with session_factory() as db:
        db.add(partner)
        await db.commit()
    return partner


async def create_profile(
    session_factory: async_sessionmaker[AsyncSession],
    fcm_token: Optional[str] = None,
    push_token: Optional[str] = None,
) -> UserProfile:
    profile = UserProfile(id=uuid.uuid4(), fcm_token=fcm_token, push_token=push_token)
    async with session_factory() as db:
        db.add(profile)
        await db.commit()
    return profile


def minutes_ago(minutes: int) -> datetime:
    return utcnow() - timedelta(minutes=minutes)


async def seed_order(
    session_factory: async_sessionmaker[AsyncSession],
    partner_id: uuid.UUID,
    with_booking: bool = False,
    preference_id: Optional[str] = None,
    age_minutes: int = 0,
) -> Order:
    """
    Insert an order through the lifecycle manager and backdate it.

    With ``preference_id`` the order is moved to ``pending_payment``.
    """
    booking = None
    if with_booking:
        booking = BookingDraft(
            service_id=uuid.uuid4(), scheduled_date="2026-11-02", scheduled_time="10:30"
        )
    draft = OrderDraft(
        partner_id=partner_id,
        customer_id=uuid.uuid4(),
        order_type=OrderType.SERVICE_BOOKING if with_booking else OrderType.PRODUCT_PURCHASE,
        items=[{"id": "sku-1", "name": "Bath", "unit_price": "1000.00", "quantity": 2}],
        currency="UYU",
        subtotal=Decimal("2000.00"),
        tax_amount=Decimal("440.00"),
        tax_rate=Decimal("22"),
        tax_included=False,
        shipping_cost=Decimal("0"),
        total_amount=Decimal("2440.00"),
        commission_percentage=Decimal("5"),
        commission_amount=Decimal("122.00"),
        partner_amount=Decimal("2318.00"),
        booking=booking,
    )
    manager = OrderLifecycleManager(session_factory)
    order = await manager.create_order(draft)
    if preference_id is not None:
        await manager.attach_payment_session(order, preference_id, f"https://pay/{preference_id}")

    if age_minutes:
        async with session_factory() as db:
            await db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(created_at=minutes_ago(age_minutes))
            )
            await db.commit()

    stored = await manager.get_order(order.id)
    assert stored is not None
    return stored
