"""Gateway-brokered subscription path and the coordinator that falls back to it."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from app.client.api_client import SubscriberApiClient
from app.client.key_exchange import KeyExchangeService
from app.client.runtime import BackgroundContext, PushRuntime, UserContext
from app.client.subscription_manager import SubscriptionManager, at_stage
from app.notifications.contracts import GatewayChannel, SubscriptionStage, SubscriptionStageError, UnsupportedRuntimeError

logger = logging.getLogger(__name__)


class GatewayMessagingPath:
  """Acquire a gateway token and persist it as the user's channel."""

  def __init__(self, *, runtime: PushRuntime, manager: SubscriptionManager, key_exchange: KeyExchangeService, api_client: SubscriberApiClient) -> None:
    self._runtime = runtime
    self._manager = manager
    self._key_exchange = key_exchange
    self._api_client = api_client
    self._foreground_installed = False
    self._token: str | None = None

  @property
  def token(self) -> str | None:
    return self._token

  async def activate(self, user: UserContext) -> bool:
    if not self._runtime.supports_gateway_messaging():
      raise UnsupportedRuntimeError("Gateway messaging is not supported in this runtime.")

    # Permission and the service worker are shared with the direct path.
    await self._manager.request_permission()
    context = await at_stage(SubscriptionStage.REGISTRATION, self._manager.ensure_background_context())
    token = await self._acquire_token(context)

    await at_stage(
      SubscriptionStage.PERSIST,
      self._api_client.save_channel(user, GatewayChannel(token=token), platform=self._runtime.platform_hint(), standalone=self._runtime.is_standalone(), user_agent=self._runtime.user_agent()),
    )
    self._token = token
    self._install_foreground_handler()
    return True

  async def _acquire_token(self, context: BackgroundContext) -> str:
    """Ask for a token without a key hint first, then once more with the public key."""
    try:
      token = await self._runtime.get_gateway_token(context)
    except Exception as exc:  # noqa: BLE001
      logger.info("Gateway token request without key hint failed: %s", exc)
      token = None

    if token:
      return token

    vapid_key = await at_stage(SubscriptionStage.SUBSCRIBE, self._key_exchange.get_public_key())
    token = await at_stage(SubscriptionStage.SUBSCRIBE, self._runtime.get_gateway_token(context, vapid_key))
    if not token:
      raise SubscriptionStageError(SubscriptionStage.SUBSCRIBE, "The gateway did not issue a messaging token.")
    return token

  def _install_foreground_handler(self) -> None:
    if self._foreground_installed:
      return
    self._runtime.on_foreground_message(self._on_foreground_message)
    self._foreground_installed = True

  def _on_foreground_message(self, message: Mapping[str, Any]) -> None:
    # The background context does not display messages while the app has focus.
    notification = message.get("notification") or {}
    title = notification.get("title") or "New notification"
    body = notification.get("body")
    self._runtime.show_toast(f"{title}: {body}" if body else title)


class DeliveryFallbackCoordinator:
  """Activate the direct push path, falling back to the gateway path only when it fails."""

  def __init__(self, *, direct: SubscriptionManager, gateway: GatewayMessagingPath) -> None:
    self._direct = direct
    self._gateway = gateway
    self._active_path: str | None = None

  @property
  def active_path(self) -> str | None:
    return self._active_path

  async def activate(self, user_context: UserContext) -> bool:
    """Return True once either path succeeds; raise the gateway path's error if both fail."""
    try:
      await self._direct.subscribe(user_context)
    except Exception as direct_error:  # noqa: BLE001
      logger.warning("Direct push activation failed; trying gateway messaging: %s", direct_error)
    else:
      self._active_path = "direct"
      return True

    try:
      await self._gateway.activate(user_context)
    except Exception as exc:
      logger.error("Both push activation paths failed: %s", exc)
      raise

    self._active_path = "gateway"
    return True
