"""
Payment gateway REST client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors on idempotent calls
- Circuit breaker pattern
- OAuth authorization-code and refresh-token exchange
- Checkout preference creation
- Payment search, lookup and cancellation
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import GatewayResponseError
from marketplace_core.integrations.gateway_models import (
    GatewayIdentity,
    GatewayPayment,
    OAuthCredentials,
    PaymentSearchResult,
    PreferenceResponse,
    parse_response,
)
from marketplace_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class GatewayError(Exception):
    """Base exception for payment gateway transport and HTTP errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
            original_error: Underlying httpx exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def is_retryable(self) -> bool:
        return self.error_type is not GatewayErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.is_retryable


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Opens after repeated transient failures so a gateway outage fails fast
    instead of tying up every checkout. Permanent errors (bad request,
    rejected token) do not count towards opening it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.is_retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class GatewayClient:
    """
    Async wrapper around the payment gateway REST API.

    Every call authenticates with the access token of the account it acts
    for; the client itself holds no partner credentials.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            base_url=self.settings.gateway_base_url,
            timeout=self.settings.gateway_timeout_seconds,
            transport=transport,
        )

        logger.info("gateway_client_initialized", base_url=self.settings.gateway_base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _send(
        self,
        method: str,
        path: str,
        access_token: Optional[str],
        extra_headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        if extra_headers:
            headers.update(extra_headers)

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise GatewayError(
                f"Gateway returned {status_code}: {e.response.text[:200]}",
                self._classify_status(status_code),
                status_code=status_code,
                original_error=e,
            ) from e
        except httpx.TimeoutException as e:
            raise GatewayError(
                "Gateway request timed out", GatewayErrorType.TRANSIENT, original_error=e
            ) from e
        except httpx.RequestError as e:
            raise GatewayError(
                f"Could not reach payment gateway: {e}",
                GatewayErrorType.TRANSIENT,
                original_error=e,
            ) from e

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        start_time = time.time()
        try:
            response = await self.circuit_breaker.call(
                self._send, method, path, access_token, **kwargs
            )
        except GatewayError as e:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            metrics.record_gateway_error(e.error_type.value)
            logger.warning(
                "gateway_request_failed",
                operation=operation,
                status_code=e.status_code,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        try:
            return response.json()
        except ValueError as e:
            raise GatewayResponseError(
                f"Gateway returned a non-JSON body for {operation}", operation=operation
            ) from e

    async def exchange_authorization_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthCredentials:
        """
        Exchange an OAuth authorization code for partner credentials.

        Not retried: authorization codes are single use.
        """
        logger.info("exchanging_authorization_code")
        data = await self._request(
            "oauth_authorization_code",
            "POST",
            "/oauth/token",
            json={
                "client_id": self.settings.gateway_client_id,
                "client_secret": self.settings.gateway_client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri or self.settings.gateway_redirect_uri,
            },
        )
        return parse_response(OAuthCredentials, data, "oauth_authorization_code")

    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        """Trade a refresh token for a new credential set."""
        logger.info("refreshing_access_token")
        data = await self._request(
            "oauth_refresh_token",
            "POST",
            "/oauth/token",
            json={
                "client_id": self.settings.gateway_client_id,
                "client_secret": self.settings.gateway_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return parse_response(OAuthCredentials, data, "oauth_refresh_token")

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def get_identity(self, access_token: str) -> GatewayIdentity:
        """
        Fetch the account an access token belongs to.

        Args:
            access_token: Token to validate

        Returns:
            GatewayIdentity: Account id and nickname

        Raises:
            GatewayError: If the gateway rejects the token or is unreachable
        """
        data = await self._request("get_identity", "GET", "/users/me", access_token)
        return parse_response(GatewayIdentity, data, "get_identity")

    async def create_preference(
        self, access_token: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> PreferenceResponse:
        """
        Create a hosted checkout session.

        Not retried here: a timed-out request may still have created a session.
        """
        extra_headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request(
            "create_preference",
            "POST",
            "/checkout/preferences",
            access_token,
            extra_headers=extra_headers,
            json=payload,
        )
        return parse_response(PreferenceResponse, data, "create_preference")

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def search_payments(
        self, access_token: str, external_reference: str
    ) -> List[GatewayPayment]:
        """Find payments created against an order id."""
        data = await self._request(
            "search_payments",
            "GET",
            "/v1/payments/search",
            access_token,
            params={"external_reference": external_reference},
        )
        return parse_response(PaymentSearchResult, data, "search_payments").results

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def get_payment(self, access_token: str, payment_id: str) -> GatewayPayment:
        data = await self._request(
            "get_payment", "GET", f"/v1/payments/{payment_id}", access_token
        )
        return parse_response(GatewayPayment, data, "get_payment")

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def cancel_payment(self, access_token: str, payment_id: str) -> GatewayPayment:
        """Cancel a payment that has not been captured yet."""
        logger.info("cancelling_gateway_payment", payment_id=payment_id)
        data = await self._request(
            "cancel_payment",
            "PUT",
            f"/v1/payments/{payment_id}",
            access_token,
            json={"status": "cancelled"},
        )
        return parse_response(GatewayPayment, data, "cancel_payment")
