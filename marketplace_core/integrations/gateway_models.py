"""
Validated shapes of the payment gateway's JSON responses.

Only the fields the core reads are declared; everything else is ignored.
"""
from decimal import Decimal
from typing import Any, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from marketplace_core.core.exceptions import GatewayResponseError

ModelT = TypeVar("ModelT", bound=BaseModel)


class GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GatewayIdentity(GatewayModel):
    """Account behind an access token (``GET /users/me``)."""

    id: Union[int, str]
    nickname: Optional[str] = None
    site_id: Optional[str] = None


class OAuthCredentials(GatewayModel):
    """Token grant returned by ``POST /oauth/token``."""

    access_token: str
    public_key: Optional[str] = None
    refresh_token: Optional[str] = None
    user_id: Optional[Union[int, str]] = None
    expires_in: Optional[int] = None
    live_mode: Optional[bool] = None


class PreferenceResponse(GatewayModel):
    """Hosted checkout session (``POST /checkout/preferences``)."""

    id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None


class GatewayPayment(GatewayModel):
    id: Union[int, str]
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    currency_id: Optional[str] = None


class PaymentSearchResult(GatewayModel):
    results: List[GatewayPayment] = []


def parse_response(model: Type[ModelT], data: Any, operation: str) -> ModelT:
    """Validate a gateway payload, turning schema errors into ``GatewayResponseError``."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise GatewayResponseError(
            f"Malformed {operation} response from payment gateway: {e.error_count()} error(s)",
            operation=operation,
        ) from e
