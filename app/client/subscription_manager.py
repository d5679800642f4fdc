"""Permission and subscription state machines for the direct push path."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from enum import StrEnum
from typing import TypeVar

from app.client.api_client import SubscriberApiClient
from app.client.key_exchange import KeyExchangeService
from app.client.runtime import BackgroundContext, BackgroundContextState, PermissionState, PushRuntime, PushSubscriptionHandle, UserContext
from app.notifications.contracts import InvalidTargetError, NotificationError, PermissionDeniedError, SubscriptionStage, SubscriptionStageError, UnsupportedRuntimeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_WORKER_URL = "/sw.js"
DENIED_MESSAGE = "Notifications are blocked for this site. Open your browser's site settings, allow notifications, then reload the page."
UNSUPPORTED_MESSAGE = "This browser cannot receive push notifications. Install the app to your home screen or use a current browser."
CONFIRMATION_TITLE = "Notifications enabled"
CONFIRMATION_BODY = "You will be alerted about new appointments."


async def at_stage(stage: SubscriptionStage, awaitable: Awaitable[T]) -> T:
  """Await ``awaitable`` and re-raise any failure as a ``SubscriptionStageError`` for ``stage``."""
  try:
    return await awaitable
  except SubscriptionStageError:
    raise
  except (PermissionDeniedError, UnsupportedRuntimeError) as exc:
    raise SubscriptionStageError(stage, str(exc), retryable=False) from exc
  except NotificationError as exc:
    raise SubscriptionStageError(stage, str(exc)) from exc
  except Exception as exc:  # noqa: BLE001
    raise SubscriptionStageError(stage, f"{type(exc).__name__}: {exc}") from exc


class SubscriptionState(StrEnum):
  ABSENT = "absent"
  REGISTERING = "registering"
  ACTIVE = "active"
  STALE = "stale"


_PERMISSION_TRANSITIONS: dict[PermissionState, set[PermissionState]] = {
  PermissionState.NOT_DETERMINED: {PermissionState.GRANTED, PermissionState.DENIED},
  PermissionState.GRANTED: {PermissionState.DENIED, PermissionState.NOT_DETERMINED},
  PermissionState.DENIED: set(),
}

_SUBSCRIPTION_TRANSITIONS: dict[SubscriptionState, set[SubscriptionState]] = {
  SubscriptionState.ABSENT: {SubscriptionState.REGISTERING},
  SubscriptionState.REGISTERING: {SubscriptionState.ACTIVE, SubscriptionState.STALE, SubscriptionState.ABSENT},
  SubscriptionState.ACTIVE: {SubscriptionState.REGISTERING, SubscriptionState.STALE, SubscriptionState.ABSENT},
  SubscriptionState.STALE: {SubscriptionState.REGISTERING, SubscriptionState.ABSENT},
}


class SubscriptionManager:
  """Negotiate a raw push subscription and persist it to the registry.

  Permission and subscription are separate state machines. A denial is
  terminal for the lifetime of the manager: the user is never prompted again,
  and every later attempt fails fast with ``PermissionDeniedError``.
  """

  def __init__(
    self,
    *,
    runtime: PushRuntime,
    key_exchange: KeyExchangeService,
    api_client: SubscriberApiClient,
    service_worker_url: str = SERVICE_WORKER_URL,
    activation_timeout_seconds: float = 10.0,
    confirmation_delay_seconds: float = 1.0,
  ) -> None:
    self._runtime = runtime
    self._key_exchange = key_exchange
    self._api_client = api_client
    self._service_worker_url = service_worker_url
    self._activation_timeout_seconds = activation_timeout_seconds
    self._confirmation_delay_seconds = confirmation_delay_seconds
    self._permission = PermissionState.NOT_DETERMINED
    self._subscription = SubscriptionState.ABSENT
    self._context: BackgroundContext | None = None
    self._handle: PushSubscriptionHandle | None = None
    self._explained: set[str] = set()
    self._confirmation: asyncio.TimerHandle | None = None
    self._tasks: set[asyncio.Task[None]] = set()

  @property
  def permission_state(self) -> PermissionState:
    return self._permission

  @property
  def subscription_state(self) -> SubscriptionState:
    return self._subscription

  @property
  def current_subscription(self) -> PushSubscriptionHandle | None:
    return self._handle

  async def request_permission(self) -> PermissionState:
    """Resolve notification permission, prompting only while it is undetermined."""
    if not self._runtime.supports_notifications():
      self._explain_once("unsupported", UNSUPPORTED_MESSAGE)
      raise UnsupportedRuntimeError("Notifications are not supported in this runtime.")

    if self._permission == PermissionState.DENIED:
      raise PermissionDeniedError(DENIED_MESSAGE)

    observed = self._runtime.permission()
    if observed == PermissionState.NOT_DETERMINED:
      observed = await self._runtime.request_permission()

    if observed != self._permission:
      self._set_permission(observed)

    if observed == PermissionState.DENIED:
      self._explain_once("denied", DENIED_MESSAGE)
      raise PermissionDeniedError(DENIED_MESSAGE)

    if observed != PermissionState.GRANTED:
      # Prompt dismissed without a decision; the user may be asked again later.
      raise SubscriptionStageError(SubscriptionStage.PERMISSION, "Permission prompt was dismissed.")

    return observed

  async def subscribe(self, user: UserContext) -> bool:
    """Run permission, registration, subscribe and persist in order.

    Raises ``PermissionDeniedError`` or ``UnsupportedRuntimeError`` (not
    retryable) or ``SubscriptionStageError`` naming the failed stage.
    """
    if not self._runtime.supports_push():
      self._explain_once("unsupported", UNSUPPORTED_MESSAGE)
      raise UnsupportedRuntimeError("This runtime has no push service.")

    await self.request_permission()

    if self._subscription == SubscriptionState.REGISTERING:
      raise SubscriptionStageError(SubscriptionStage.REGISTRATION, "A subscription attempt is already in progress.")

    self._set_subscription(SubscriptionState.REGISTERING)
    handle: PushSubscriptionHandle | None = None
    try:
      context = await at_stage(SubscriptionStage.REGISTRATION, self.ensure_background_context())
      application_server_key = await at_stage(SubscriptionStage.SUBSCRIBE, self._key_exchange.get_application_server_key())

      existing = await at_stage(SubscriptionStage.SUBSCRIBE, context.get_subscription())
      if existing is not None:
        # Never reuse: the old subscription may be bound to a rotated key.
        logger.info("Replacing existing push subscription")
        await at_stage(SubscriptionStage.SUBSCRIBE, context.unsubscribe(existing))
        self._handle = None

      handle = await at_stage(SubscriptionStage.SUBSCRIBE, context.subscribe(application_server_key))
      await at_stage(
        SubscriptionStage.PERSIST,
        self._api_client.save_channel(user, handle.to_channel(), platform=self._runtime.platform_hint(), standalone=self._runtime.is_standalone(), user_agent=self._runtime.user_agent()),
      )
    except SubscriptionStageError as exc:
      self._abandon_attempt(handle)
      logger.warning("Push subscription failed stage=%s retryable=%s error=%s", exc.stage, exc.retryable, exc)
      raise
    except BaseException:
      # Cancellation must not leave the manager stuck in REGISTERING.
      self._abandon_attempt(handle)
      logger.info("Push subscription attempt interrupted")
      raise

    self._handle = handle
    self._set_subscription(SubscriptionState.ACTIVE)
    self._schedule_confirmation(context)
    return True

  async def unsubscribe(self, user: UserContext) -> None:
    """Tear down the local subscription and clear the registry channel."""
    if self._context is not None:
      existing = await self._context.get_subscription()
      if existing is not None:
        await self._context.unsubscribe(existing)

    await self._api_client.clear_channel(user)
    self._handle = None
    if self._subscription != SubscriptionState.ABSENT:
      self._set_subscription(SubscriptionState.ABSENT)

  async def ensure_background_context(self) -> BackgroundContext:
    """Register the service worker and wait for it to activate."""
    context = await self._runtime.register_background_context(self._service_worker_url)
    if context.state != BackgroundContextState.ACTIVATED:
      try:
        await asyncio.wait_for(context.wait_until_activated(), timeout=self._activation_timeout_seconds)
      except TimeoutError as exc:
        raise SubscriptionStageError(SubscriptionStage.REGISTRATION, f"Service worker did not activate within {self._activation_timeout_seconds}s") from exc

    self._context = context
    return context

  async def send_test_notification(self) -> None:
    """Show a local notification through the active context; no server round trip."""
    if self._context is None or self._subscription != SubscriptionState.ACTIVE:
      raise InvalidTargetError("There is no active push subscription to test.")
    if self._permission != PermissionState.GRANTED:
      raise PermissionDeniedError("Notification permission has not been granted.")

    await self._context.show_notification("Test notification", {"body": "Push notifications are working.", "icon": "/logo.png", "tag": "push-test"})

  def close(self) -> None:
    if self._confirmation is not None:
      self._confirmation.cancel()
      self._confirmation = None

  def _schedule_confirmation(self, context: BackgroundContext) -> None:
    self.close()
    loop = asyncio.get_running_loop()
    self._confirmation = loop.call_later(self._confirmation_delay_seconds, self._spawn_confirmation, context)

  def _spawn_confirmation(self, context: BackgroundContext) -> None:
    self._confirmation = None
    task = asyncio.create_task(context.show_notification(CONFIRMATION_TITLE, {"body": CONFIRMATION_BODY, "icon": "/logo.png", "badge": "/badge.png", "tag": "push-confirmation"}))
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    task.add_done_callback(self._log_task_error)

  def _abandon_attempt(self, handle: PushSubscriptionHandle | None) -> None:
    # A subscription that exists locally but never reached the registry is stale.
    self._handle = handle
    self._set_subscription(SubscriptionState.STALE if handle is not None else SubscriptionState.ABSENT)

  def _explain_once(self, key: str, message: str) -> None:
    if key in self._explained:
      return
    self._explained.add(key)
    self._runtime.show_toast(message, level="warning")

  def _set_permission(self, new_state: PermissionState) -> None:
    if new_state not in _PERMISSION_TRANSITIONS[self._permission]:
      raise RuntimeError(f"Illegal permission transition {self._permission} -> {new_state}")
    logger.info("Notification permission %s -> %s", self._permission, new_state)
    self._permission = new_state

  def _set_subscription(self, new_state: SubscriptionState) -> None:
    if new_state not in _SUBSCRIPTION_TRANSITIONS[self._subscription]:
      raise RuntimeError(f"Illegal subscription transition {self._subscription} -> {new_state}")
    logger.info("Push subscription %s -> %s", self._subscription, new_state)
    self._subscription = new_state

  @staticmethod
  def _log_task_error(task: asyncio.Task[None]) -> None:
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Confirmation notification failed: %s", exc, exc_info=exc)
