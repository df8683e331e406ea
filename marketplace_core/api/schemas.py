"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from marketplace_core.database.models import OrderType


class CheckoutItemSchema(BaseModel):
    """One line of a checkout request."""

    id: str = Field(..., min_length=1, description="Product or service identifier")
    name: str = Field(..., min_length=1, description="Name shown on the checkout page")
    unit_price: Decimal = Field(..., ge=0, description="Unit price as quoted by the partner")
    quantity: int = Field(..., gt=0, description="Units ordered")
    tax_rate: Optional[Decimal] = Field(
        default=None, ge=0, description="Item tax rate (percent); partner default when omitted"
    )
    discount_percentage: Decimal = Field(
        default=Decimal("0"), ge=0, le=100, description="Line discount (percent)"
    )
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class PhoneSchema(BaseModel):
    area_code: Optional[str] = None
    number: str


class AddressSchema(BaseModel):
    zip_code: Optional[str] = None
    street_name: Optional[str] = None
    street_number: Optional[str] = None


class PayerSchema(BaseModel):
    """Customer contact details passed through to the checkout page."""

    name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[PhoneSchema] = None
    address: Optional[AddressSchema] = None


class BookingSchema(BaseModel):
    """Slot reserved by a service booking."""

    service_id: UUID = Field(..., description="Booked service")
    scheduled_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    scheduled_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="HH:MM")
    pet_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    partner_id: UUID = Field(..., description="Partner selling the items")
    customer_id: UUID = Field(..., description="Customer placing the order")
    order_type: OrderType = Field(..., description="product_purchase or service_booking")
    items: List[CheckoutItemSchema] = Field(..., min_length=1)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payer: Optional[PayerSchema] = None
    shipping_address: Optional[AddressSchema] = None
    booking: Optional[BookingSchema] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalise currency codes to upper case."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "partner_id": "3f0e3c1e-8d4b-4e5a-9a57-4a8f1d2c6b10",
                    "customer_id": "9b1d2f3a-6c7e-4f80-8a91-b2c3d4e5f607",
                    "order_type": "product_purchase",
                    "items": [
                        {
                            "id": "sku-1",
                            "name": "Dog food 10kg",
                            "unit_price": "1000.00",
                            "quantity": 2,
                        }
                    ],
                    "shipping_cost": "0",
                    "currency": "UYU",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for a started checkout."""

    order_id: UUID = Field(..., description="Order id, also the gateway external reference")
    status: str = Field(..., description="Order status")
    preference_id: str = Field(..., description="Gateway checkout session id")
    checkout_url: str = Field(..., description="URL to send the customer to")
    environment: str = Field(..., description="test or production")
    total_amount: Decimal
    commission_amount: Decimal
    partner_amount: Decimal
    booking_id: Optional[UUID] = None


class OrderResponse(BaseModel):
    """Response schema for order lookups."""

    id: UUID
    partner_id: UUID
    customer_id: UUID
    order_type: str
    status: str
    items: List[Dict[str, Any]]
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    tax_included: bool
    shipping_cost: Decimal
    total_amount: Decimal
    commission_amount: Decimal
    partner_amount: Decimal
    payment_preference_id: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    booking_id: Optional[UUID] = None
    created_at: str
    updated_at: str


class OAuthCallbackRequest(BaseModel):
    """Authorization code returned to the partner's redirect URI."""

    code: str = Field(..., min_length=1, description="OAuth authorization code")


class ManualCredentialsRequest(BaseModel):
    access_token: str = Field(..., min_length=1)
    public_key: Optional[str] = None


class PartnerConnectionResponse(BaseModel):
    partner_id: UUID
    connection_mode: str
    environment: str
    collector_id: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response schema for payment notifications."""

    status: str = Field(..., description="applied, ignored, duplicate, stale, rejected, not_found")
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    order_id: Optional[str] = None


class SweepResponse(BaseModel):
    examined: int
    cancelled: int
    bookings_cancelled: int
    payments_cancelled: int
    skipped: int
    cancelled_order_ids: List[str]
    errors: List[Dict[str, Any]]


class DispatchResponse(BaseModel):
    examined: int
    sent: int
    retried: int
    failed: int
    skipped: int
    errors: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = None
