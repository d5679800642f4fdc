"""Host runtime contract for the client-side subscription flow.

The browser (or any other host) is reached only through ``PushRuntime`` so the
state machines in this package can be driven by a real bridge or a test fake.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from app.notifications.contracts import PlatformHint, SubscriberRole, WebPushChannel


class PermissionState(StrEnum):
  NOT_DETERMINED = "not-determined"
  GRANTED = "granted"
  DENIED = "denied"


class BackgroundContextState(StrEnum):
  """Lifecycle of the registered service worker."""

  INSTALLING = "installing"
  INSTALLED = "installed"
  ACTIVATING = "activating"
  ACTIVATED = "activated"
  REDUNDANT = "redundant"


@dataclass(frozen=True)
class PushSubscriptionHandle:
  """Subscription issued by the runtime's own push service."""

  endpoint: str
  p256dh: str
  auth: str

  def to_channel(self) -> WebPushChannel:
    return WebPushChannel(endpoint=self.endpoint, p256dh=self.p256dh, auth=self.auth)


@dataclass(frozen=True)
class UserContext:
  """Signed-in user the subscription is written for."""

  subject_id: str
  id_token: str
  role: SubscriberRole = SubscriberRole.OTHER
  group_id: str | None = None


class BackgroundContext(Protocol):
  """A registered service worker able to receive pushes and show notifications."""

  @property
  def state(self) -> BackgroundContextState: ...

  async def wait_until_activated(self) -> None:
    """Suspend until the context reaches ``activated``; raise if it becomes redundant."""

  async def get_subscription(self) -> PushSubscriptionHandle | None: ...

  async def subscribe(self, application_server_key: bytes) -> PushSubscriptionHandle: ...

  async def unsubscribe(self, handle: PushSubscriptionHandle) -> bool: ...

  async def show_notification(self, title: str, options: Mapping[str, Any]) -> None: ...


class PushRuntime(Protocol):
  def supports_notifications(self) -> bool: ...

  def supports_push(self) -> bool: ...

  def supports_gateway_messaging(self) -> bool: ...

  def permission(self) -> PermissionState: ...

  async def request_permission(self) -> PermissionState: ...

  async def register_background_context(self, script_url: str) -> BackgroundContext:
    """Register (or return the already registered) context for ``script_url``."""

  async def get_gateway_token(self, context: BackgroundContext, vapid_key: str | None = None) -> str | None: ...

  def on_foreground_message(self, handler: Callable[[Mapping[str, Any]], None]) -> None: ...

  def show_toast(self, message: str, *, level: str = "info") -> None: ...

  def platform_hint(self) -> PlatformHint: ...

  def is_standalone(self) -> bool: ...

  def user_agent(self) -> str | None: ...
