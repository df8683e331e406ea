"""
Push notification delivery channels.

Two independent providers, each addressed by its own per-user token:
- FCM HTTP v1 (native devices, primary)
- Expo push service (legacy app builds, fallback)

Any failure, HTTP-level or reported per message by the provider, is raised
as ``DeliveryFailure`` so the dispatcher can fall back or retry.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import google.auth.transport.requests
import httpx
import structlog
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account

from marketplace_core.config import Settings, get_settings
from marketplace_core.core.exceptions import DeliveryFailure

logger = structlog.get_logger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


class PushChannel(ABC):
    """A push provider that can deliver one message to one device token."""

    name: str = "push"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            timeout=self.settings.notification_send_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return True

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Any:
        try:
            response = await self._client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise DeliveryFailure(
                f"{self.name} returned {e.response.status_code}: {e.response.text[:200]}",
                channel=self.name,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise DeliveryFailure(
                f"{self.name} request failed: {e}", channel=self.name
            ) from e
        except ValueError as e:
            raise DeliveryFailure(f"{self.name} returned a non-JSON body", channel=self.name) from e

    @abstractmethod
    async def send(
        self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Deliver a message.

        Returns:
            str: Provider message or ticket id

        Raises:
            DeliveryFailure: If the provider did not accept the message
        """


class FcmChannel(PushChannel):
    """
    Firebase Cloud Messaging HTTP v1.

    Access tokens are minted from the service account key and refreshed
    whenever the current one has expired or is about to.
    """

    name = "fcm"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials: Optional[Credentials] = None,
    ) -> None:
        super().__init__(settings, transport)
        self.project_id = self.settings.fcm_project_id
        self._credentials = credentials
        self._refresh_lock = asyncio.Lock()

        info = self.settings.get_fcm_service_account_info()
        if credentials is None and info is not None:
            self._credentials = service_account.Credentials.from_service_account_info(
                info, scopes=[FCM_SCOPE]
            )
            self.project_id = self.project_id or info.get("project_id", "")

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self._credentials is not None)

    async def _access_token(self) -> str:
        """
        Current bearer token, refreshed first if it is no longer valid.

        Raises:
            DeliveryFailure: If Google refuses to mint a token
        """
        async with self._refresh_lock:
            if not self._credentials.valid:
                try:
                    # google-auth refreshes synchronously over requests
                    await asyncio.to_thread(
                        self._credentials.refresh, google.auth.transport.requests.Request()
                    )
                except GoogleAuthError as e:
                    logger.error("fcm_token_refresh_failed", error=str(e))
                    raise DeliveryFailure(
                        f"Could not mint an FCM access token: {e}", channel=self.name
                    ) from e
                logger.info("fcm_token_refreshed", expiry=str(self._credentials.expiry))
            return self._credentials.token

    @staticmethod
    def build_message(
        token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        notification: Dict[str, Any] = {"title": title, "body": body}
        image = (data or {}).get("imageUrl")
        if image:
            notification["image"] = image

        return {
            "message": {
                "token": token,
                "notification": notification,
                # FCM data values must be strings
                "data": {key: str(value) for key, value in (data or {}).items()},
                "android": {
                    "priority": "high",
                    "notification": {
                        "sound": "default",
                        "channel_id": "default",
                        "default_sound": True,
                        "default_vibrate_timings": True,
                    },
                },
                "apns": {
                    "payload": {
                        "aps": {
                            "sound": "default",
                            "badge": 1,
                            "alert": {"title": title, "body": body},
                            "content-available": 1,
                        }
                    }
                },
            }
        }

    async def send(
        self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> str:
        if not self.configured:
            raise DeliveryFailure("FCM channel is not configured", channel=self.name)

        url = (
            f"{self.settings.fcm_base_url}/v1/projects/"
            f"{self.project_id}/messages:send"
        )
        result = await self._post(
            url,
            self.build_message(token, title, body, data),
            {"Authorization": f"Bearer {await self._access_token()}"},
        )

        message_id = result.get("name") if isinstance(result, dict) else None
        if not message_id:
            raise DeliveryFailure("FCM response carried no message name", channel=self.name)
        return message_id


class ExpoChannel(PushChannel):
    """Expo push service, used for devices that only registered an Expo token."""

    name = "expo"

    @staticmethod
    def build_message(
        token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
            "priority": "high",
            "channelId": "default",
        }

    async def send(
        self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> str:
        headers = {"Accept": "application/json", "Accept-Encoding": "gzip, deflate"}
        if self.settings.expo_access_token:
            headers["Authorization"] = f"Bearer {self.settings.expo_access_token}"

        result = await self._post(
            self.settings.expo_push_url, self.build_message(token, title, body, data), headers
        )

        ticket = result.get("data", result) if isinstance(result, dict) else None
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None
        if not isinstance(ticket, dict):
            raise DeliveryFailure("Expo response carried no ticket", channel=self.name)

        if ticket.get("status") != "ok":
            details = ticket.get("details") or {}
            reason = ticket.get("message") or details.get("error") or "unknown error"
            raise DeliveryFailure(f"Expo rejected the message: {reason}", channel=self.name)
        return str(ticket.get("id", ""))
