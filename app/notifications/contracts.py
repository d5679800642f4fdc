"""Contracts shared by the push subscription and delivery components."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol


class ChannelKind(StrEnum):
  """Which subscription path produced a channel."""

  GATEWAY = "gateway"
  WEBPUSH = "webpush"


class SubscriberRole(StrEnum):
  ADMIN = "admin"
  STAFF = "staff"
  OTHER = "other"


class PlatformHint(StrEnum):
  MOBILE = "mobile"
  DESKTOP = "desktop"


class Validity(StrEnum):
  VALID = "valid"
  INVALID = "invalid"


class OutcomeStatus(StrEnum):
  DELIVERED = "delivered"
  FAILED = "failed"


class FailureReason(StrEnum):
  RECIPIENT_GONE = "recipient-gone"
  UNAVAILABLE = "unavailable"
  INVALID_TARGET = "invalid-argument"
  INTERNAL = "internal"


@dataclass(frozen=True)
class GatewayChannel:
  """Opaque messaging token issued by the push gateway."""

  token: str
  kind: ChannelKind = field(default=ChannelKind.GATEWAY, init=False)

  @property
  def key(self) -> str:
    return self.token


@dataclass(frozen=True)
class WebPushChannel:
  """Raw browser push endpoint plus its encryption secrets."""

  endpoint: str
  p256dh: str
  auth: str
  kind: ChannelKind = field(default=ChannelKind.WEBPUSH, init=False)

  @property
  def key(self) -> str:
    return self.endpoint


Channel = GatewayChannel | WebPushChannel


def redact_channel_key(key: str) -> str:
  """Shorten a channel identifier for logs."""
  if len(key) <= 16:
    return key
  return f"{key[:12]}...{key[-4:]}"


@dataclass(frozen=True)
class NotificationRequest:
  """Title, body and string data for one logical notification; ``data['url']`` is the deep link."""

  title: str
  body: str
  data: dict[str, str]

  @property
  def url(self) -> str:
    return self.data["url"]


@dataclass(frozen=True)
class DeliveryTarget:
  """A channel plus the device hints used to shape its payload."""

  channel: Channel
  platform: PlatformHint = PlatformHint.DESKTOP
  standalone: bool = False
  subject_id: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
  """Result of exactly one send attempt to one recipient."""

  channel_key: str
  channel_kind: ChannelKind
  status: OutcomeStatus
  subject_id: str | None = None
  message_id: str | None = None
  reason: FailureReason | None = None
  detail: str | None = None

  @property
  def delivered(self) -> bool:
    return self.status == OutcomeStatus.DELIVERED

  @property
  def recipient_gone(self) -> bool:
    return self.reason == FailureReason.RECIPIENT_GONE

  def as_dict(self) -> dict[str, str | None]:
    return {
      "subjectId": self.subject_id,
      "channelKind": self.channel_kind.value,
      "channel": redact_channel_key(self.channel_key),
      "status": self.status.value,
      "reason": self.reason.value if self.reason else None,
      "messageId": self.message_id,
      "detail": self.detail,
    }


class NotificationError(Exception):
  """Base class for every push subscription or delivery failure."""

  code = "internal"


class PermissionDeniedError(NotificationError):
  """The user refused notification permission; terminal for the session."""

  code = "permission-denied"


class UnsupportedRuntimeError(NotificationError):
  """The runtime cannot display notifications or lacks a push service."""

  code = "unsupported-runtime"


class TransientNetworkError(NotificationError):
  """A network or provider hiccup; the caller may retry."""

  code = "unavailable"


class InvalidTargetError(NotificationError):
  """The caller supplied a missing or malformed target channel or payload."""

  code = "invalid-argument"


class RecipientGoneError(NotificationError):
  """The provider reports the channel as no longer registered."""

  code = "recipient-gone"


class ServerInternalError(NotificationError):
  code = "internal"


class UnauthenticatedError(NotificationError):
  code = "unauthenticated"


class SubscriptionStage(StrEnum):
  PERMISSION = "permission"
  REGISTRATION = "registration"
  SUBSCRIBE = "subscribe"
  PERSIST = "persist"


class SubscriptionStageError(NotificationError):
  """A client negotiation step failed; ``stage`` names which one."""

  code = "subscription-failed"

  def __init__(self, stage: SubscriptionStage, message: str, *, retryable: bool = True) -> None:
    super().__init__(f"{stage.value}: {message}")
    self.stage = stage
    self.retryable = retryable


@dataclass(frozen=True)
class PlatformHints:
  """Per-platform presentation and priority hints attached to a payload."""

  profile: str
  priority: str
  urgency: str
  ttl_seconds: int
  sound: str | None
  icon: str
  badge: str
  vibrate: tuple[int, ...]
  require_interaction: bool
  tag: str | None = None
  renotify: bool = False


@dataclass(frozen=True)
class OutboundPush:
  """Everything a transport needs for one send."""

  channel: Channel
  request: NotificationRequest
  hints: PlatformHints
  link: str | None = None
  probe: bool = False
  sent_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.UTC))


class PushSender(Protocol):
  """Delivery contract for one transport; implementations are synchronous and raise taxonomy errors."""

  def send(self, push: OutboundPush) -> str:
    """Send a push and return the provider message id."""
