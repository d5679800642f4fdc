"""HTTP client for the subscriber endpoints."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.client.runtime import UserContext
from app.notifications.contracts import Channel, GatewayChannel, PlatformHint, ServerInternalError, TransientNetworkError, UnauthenticatedError, redact_channel_key

logger = logging.getLogger(__name__)

SUBSCRIBER_PATH = "/v1/push/subscribers/me"


def channel_payload(channel: Channel) -> dict[str, Any]:
  if isinstance(channel, GatewayChannel):
    return {"kind": "gateway", "token": channel.token}
  return {"kind": "webpush", "endpoint": channel.endpoint, "keys": {"p256dh": channel.p256dh, "auth": channel.auth}}


class SubscriberApiClient:
  def __init__(self, *, base_url: str, client: httpx.AsyncClient | None = None, timeout_seconds: float = 10.0) -> None:
    self._url = f"{base_url.rstrip('/')}{SUBSCRIBER_PATH}"
    self._client = client
    self._timeout_seconds = timeout_seconds

  async def save_channel(self, user: UserContext, channel: Channel, *, platform: PlatformHint, standalone: bool, user_agent: str | None = None) -> None:
    """Persist ``channel`` as the user's current device; role and group come from the token."""
    body = {"channel": channel_payload(channel), "platform": platform.value, "standalone": standalone}
    await self._request("PUT", user, json=body, user_agent=user_agent)
    logger.info("Subscriber channel saved subject_id=%s kind=%s channel=%s", user.subject_id, channel.kind, redact_channel_key(channel.key))

  async def clear_channel(self, user: UserContext) -> None:
    await self._request("DELETE", user)

  async def _request(self, method: str, user: UserContext, *, json: dict[str, Any] | None = None, user_agent: str | None = None) -> None:
    headers = {"authorization": f"Bearer {user.id_token}"}
    if user_agent:
      # The registry records the device's agent, not the HTTP library's.
      headers["user-agent"] = user_agent
    try:
      if self._client is not None:
        response = await self._client.request(method, self._url, json=json, headers=headers, timeout=self._timeout_seconds)
      else:
        async with httpx.AsyncClient(trust_env=False) as client:
          response = await client.request(method, self._url, json=json, headers=headers, timeout=self._timeout_seconds)
    except httpx.RequestError as exc:
      raise TransientNetworkError(f"Subscriber API unreachable: {exc}") from exc

    if response.status_code == httpx.codes.UNAUTHORIZED:
      raise UnauthenticatedError("Subscriber API rejected the user token")
    if response.status_code >= 500:
      raise TransientNetworkError(f"Subscriber API returned {response.status_code}")
    if response.is_error:
      raise ServerInternalError(f"Subscriber API returned {response.status_code}: {response.text[:200]}")
