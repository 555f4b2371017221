"""
Push transport for device notifications (Firebase Cloud Messaging HTTP v1).

Every failure is classified so the fan-out can tell a dead endpoint
(remove the registration) from a transient provider problem (keep it).
"""

import logging
import os
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_REQUEST_TIMEOUT_SECONDS = float(os.getenv("FCM_REQUEST_TIMEOUT_SECONDS", "10"))

# FCM error codes meaning the token will never work again
PERMANENT_FCM_ERROR_CODES = {"UNREGISTERED", "SENDER_ID_MISMATCH"}


class PushDeliveryError(Exception):
    """Delivery to a single endpoint failed."""

    permanent = False


class InvalidPushTokenError(PushDeliveryError):
    """The endpoint token is permanently invalid and should be forgotten."""

    permanent = True


class TransientPushError(PushDeliveryError):
    """Delivery failed for a reason that may succeed on retry."""


class PushTransport:
    """Interface for push providers."""

    async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        """
        Send one message to one endpoint.

        Returns:
            Provider message id

        Raises:
            InvalidPushTokenError: Token is permanently invalid
            TransientPushError: Any other delivery failure
        """
        raise NotImplementedError


def stringify_data(data: Optional[Dict]) -> Dict[str, str]:
    """FCM data payloads only accept string values."""
    if not data:
        return {}
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def classify_fcm_error(status_code: int, payload: Optional[Dict]) -> PushDeliveryError:
    """
    Map an FCM error response to a classified delivery error.

    Args:
        status_code: HTTP status of the FCM response
        payload: Parsed JSON body (may be None if the body was not JSON)
    """
    error = (payload or {}).get("error") or {}
    status = error.get("status", "")
    message = error.get("message", "") or f"HTTP {status_code}"

    error_codes = set()
    for detail in error.get("details") or []:
        code = detail.get("errorCode")
        if code:
            error_codes.add(code)

    if error_codes & PERMANENT_FCM_ERROR_CODES or status_code == 404:
        return InvalidPushTokenError(message)

    # INVALID_ARGUMENT covers both bad tokens and bad payloads; only the former is permanent
    if (status == "INVALID_ARGUMENT" or "INVALID_ARGUMENT" in error_codes) and "token" in message.lower():
        return InvalidPushTokenError(message)

    return TransientPushError(message)


class FcmPushTransport(PushTransport):
    """Sends messages through the FCM HTTP v1 API."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        timeout: float = FCM_REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self.access_token = access_token
        self.timeout = timeout
        self._client = client

    async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        url = FCM_SEND_URL.format(project_id=self.project_id)
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": data or {},
            }
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=message, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=message, headers=headers)
        except httpx.HTTPError as e:
            raise TransientPushError(f"FCM request failed: {e}") from e

        if resp.status_code == 200:
            return resp.json().get("name", "")

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        raise classify_fcm_error(resp.status_code, payload)


_push_transport: Optional[PushTransport] = None


def get_push_transport() -> Optional[PushTransport]:
    """
    Get the configured push transport.

    Returns:
        PushTransport instance, or None when FCM credentials are not set
        (push delivery is then skipped; history is still recorded)
    """
    global _push_transport
    if _push_transport is None:
        project_id = os.environ.get("FCM_PROJECT_ID")
        access_token = os.environ.get("FCM_ACCESS_TOKEN")
        if not project_id or not access_token:
            logger.debug("FCM_PROJECT_ID/FCM_ACCESS_TOKEN not set, push delivery disabled")
            return None
        _push_transport = FcmPushTransport(project_id, access_token)
    return _push_transport


def set_push_transport(transport: Optional[PushTransport]) -> None:
    """Install a push transport explicitly (None resets to env-based lookup)."""
    global _push_transport
    _push_transport = transport
