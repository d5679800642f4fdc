"""Routes for push subscription lifecycle and on-demand delivery."""

from __future__ import annotations

import datetime
import logging
import re
import urllib.parse
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from app.api.deps import get_push_services
from app.core.security import Caller, get_current_caller, get_optional_caller, require_admin
from app.notifications.contracts import Channel, DeliveryTarget, GatewayChannel, InvalidTargetError, PlatformHint, SubscriberRole, TransientNetworkError, WebPushChannel, redact_channel_key
from app.notifications.factory import PushServices
from app.notifications.payloads import build_notification_request
from app.notifications.subscriber_registry import SubscriberRecord, SubscriberUpdate
from app.notifications.triggers import send_on_demand

_ALLOWED_PUSH_HOSTS = {"fcm.googleapis.com", "updates.push.services.mozilla.com", "push.services.mozilla.com", "web.push.apple.com"}
_BASE64_RE = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_:\-]+$")

router = APIRouter()
logger = logging.getLogger(__name__)


class PushSubscriptionKeys(BaseModel):
  """Browser-provided key material for Web Push encryption."""

  p256dh: str = Field(min_length=40, max_length=512)
  auth: str = Field(min_length=16, max_length=256)
  model_config = ConfigDict(extra="forbid")

  @field_validator("p256dh", "auth")
  @classmethod
  def validate_base64url(cls, value: str) -> str:
    normalized = value.strip()
    if not _BASE64_RE.fullmatch(normalized):
      raise PydanticCustomError("push_key_format", "push keys must be base64url encoded.")

    return normalized


class WebPushChannelPayload(BaseModel):
  """Standard browser push subscription object, tagged with its channel kind."""

  kind: Literal["webpush"]
  endpoint: str = Field(min_length=1, max_length=2048)
  expiration_time: int | None = Field(default=None, alias="expirationTime")
  keys: PushSubscriptionKeys
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("endpoint")
  @classmethod
  def validate_endpoint(cls, value: str) -> str:
    """Restrict endpoints to known provider hosts over HTTPS."""
    normalized = value.strip()
    parsed = urllib.parse.urlparse(normalized)

    if parsed.scheme.lower() != "https":
      raise PydanticCustomError("push_endpoint_https", "endpoint must use https.")

    host = (parsed.hostname or "").lower()
    if host not in _ALLOWED_PUSH_HOSTS and not host.endswith(".notify.windows.com"):
      raise PydanticCustomError("push_endpoint_host", "endpoint host is not allowed.")

    return normalized

  def to_channel(self) -> WebPushChannel:
    return WebPushChannel(endpoint=self.endpoint, p256dh=self.keys.p256dh, auth=self.keys.auth)


class GatewayChannelPayload(BaseModel):
  """Messaging token issued by the push gateway."""

  kind: Literal["gateway"]
  token: str = Field(min_length=20, max_length=4096)
  model_config = ConfigDict(extra="forbid")

  @field_validator("token")
  @classmethod
  def validate_token(cls, value: str) -> str:
    normalized = value.strip()
    if not _TOKEN_RE.fullmatch(normalized):
      raise PydanticCustomError("gateway_token_format", "token contains unexpected characters.")

    return normalized

  def to_channel(self) -> GatewayChannel:
    return GatewayChannel(token=self.token)


ChannelPayload = Annotated[WebPushChannelPayload | GatewayChannelPayload, Field(discriminator="kind")]
_channel_adapter: TypeAdapter[WebPushChannelPayload | GatewayChannelPayload] = TypeAdapter(ChannelPayload)


def parse_channel(raw: Any) -> WebPushChannel | GatewayChannel:
  """Validate a caller-supplied channel, reporting problems as an invalid target."""
  try:
    return _channel_adapter.validate_python(raw).to_channel()
  except ValidationError as exc:
    problems = "; ".join(f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors())
    raise InvalidTargetError(f"Malformed target channel: {problems}") from exc


class SubscriberWriteRequest(BaseModel):
  """Channel and device hints for the caller's subscriber record."""

  channel: ChannelPayload
  platform: PlatformHint = PlatformHint.DESKTOP
  standalone: bool = False
  model_config = ConfigDict(extra="forbid")


class NotificationContent(BaseModel):
  title: str | None = Field(default=None, max_length=200)
  body: str | None = Field(default=None, max_length=1000)
  data: dict[str, Any] | None = None
  model_config = ConfigDict(extra="forbid")


class OnDemandSendRequest(NotificationContent):
  """Ad hoc send to a single channel; the channel is validated in the handler."""

  channel: Any = None
  platform: PlatformHint = PlatformHint.DESKTOP
  standalone: bool = False


class GroupDispatchRequest(NotificationContent):
  role: SubscriberRole = SubscriberRole.ADMIN


class SubscriberView(BaseModel):
  """Diagnostic view of a subscriber record with the channel redacted."""

  subject_id: str = Field(serialization_alias="subjectId")
  role: SubscriberRole
  group_id: str | None = Field(serialization_alias="groupId")
  channel_kind: str | None = Field(serialization_alias="channelKind")
  channel: str | None
  platform: PlatformHint
  standalone: bool
  validity: str
  invalid_reason: str | None = Field(serialization_alias="invalidReason")
  invalidated_at: datetime.datetime | None = Field(serialization_alias="invalidatedAt")
  last_updated: datetime.datetime = Field(serialization_alias="lastUpdated")

  @classmethod
  def from_record(cls, record: SubscriberRecord) -> SubscriberView:
    channel: Channel | None = record.channel
    return cls(
      subject_id=record.subject_id,
      role=record.role,
      group_id=record.group_id,
      channel_kind=channel.kind.value if channel else None,
      channel=redact_channel_key(channel.key) if channel else None,
      platform=record.platform,
      standalone=record.standalone,
      validity=record.validity.value,
      invalid_reason=record.invalid_reason,
      invalidated_at=record.invalidated_at,
      last_updated=record.last_updated,
    )


@router.get("/public-key")
async def get_public_key(services: Annotated[PushServices, Depends(get_push_services)]) -> dict[str, str]:
  """Return the VAPID public key clients subscribe with."""
  if not services.vapid_public_key:
    raise TransientNetworkError("Push public key is not configured.")

  return {"publicKey": services.vapid_public_key, "timestamp": datetime.datetime.now(datetime.UTC).isoformat()}


@router.put("/subscribers/me", status_code=status.HTTP_204_NO_CONTENT)
async def write_subscriber(
  payload: SubscriberWriteRequest, caller: Annotated[Caller, Depends(get_current_caller)], services: Annotated[PushServices, Depends(get_push_services)], user_agent: str | None = Header(default=None)
) -> Response:
  """Upsert the caller's subscriber record and queue a validation probe for the new channel."""
  # Clamp user agent size to reduce storage abuse while keeping device context.
  normalized_user_agent = (user_agent.strip()[:512] or None) if user_agent else None
  channel = payload.channel.to_channel()
  entry = SubscriberUpdate(role=caller.role, group_id=caller.group_id, channel=channel, platform=payload.platform, standalone=payload.standalone, user_agent=normalized_user_agent)

  try:
    await services.registry.upsert(caller.uid, entry)
  except Exception as exc:  # noqa: BLE001
    logger.error("Subscriber upsert failed subject_id=%s error=%s", caller.uid, exc, exc_info=True)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save push subscription") from exc

  services.reconciliation.schedule(DeliveryTarget(channel=channel, platform=payload.platform, standalone=payload.standalone, subject_id=caller.uid))
  return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/subscribers/me", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscriber_channel(caller: Annotated[Caller, Depends(get_current_caller)], services: Annotated[PushServices, Depends(get_push_services)]) -> Response:
  """Clear the caller's channel; the record itself is kept for audit."""
  try:
    await services.registry.clear_channel(caller.uid, "unsubscribed")
  except Exception as exc:  # noqa: BLE001
    logger.error("Subscriber unsubscribe failed subject_id=%s error=%s", caller.uid, exc, exc_info=True)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete push subscription") from exc

  return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/subscribers", response_model=list[SubscriberView], response_model_by_alias=True)
async def list_subscribers(
  caller: Annotated[Caller, Depends(require_admin)],
  services: Annotated[PushServices, Depends(get_push_services)],
  group_id: Annotated[str | None, Query(alias="groupId")] = None,
  role: SubscriberRole = SubscriberRole.ADMIN,
  include_invalid: Annotated[bool, Query(alias="includeInvalid")] = True,
) -> list[SubscriberView]:
  """List subscriber records of the caller's group, including retired ones by default."""
  target_group = group_id or caller.group_id
  if target_group != caller.group_id:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")

  records = await services.registry.query_by_group_and_role(target_group, role, include_invalid=include_invalid)
  return [SubscriberView.from_record(record) for record in records]


@router.post("/send")
async def send_notification(payload: OnDemandSendRequest, caller: Annotated[Caller | None, Depends(get_optional_caller)], services: Annotated[PushServices, Depends(get_push_services)]) -> dict[str, Any]:
  """Send one notification to an explicit channel."""
  caller_id = caller.uid if caller else None
  # Anonymous callers are rejected before their channel is inspected.
  channel = parse_channel(payload.channel) if caller_id and payload.channel is not None else None
  return await send_on_demand(
    services.gateway, caller_id=caller_id, channel=channel, title=payload.title, body=payload.body, data=payload.data, platform=payload.platform, standalone=payload.standalone
  )


@router.post("/dispatch")
async def dispatch_to_group(payload: GroupDispatchRequest, caller: Annotated[Caller, Depends(require_admin)], services: Annotated[PushServices, Depends(get_push_services)]) -> dict[str, Any]:
  """Fan a notification out to every valid subscriber of a role in the caller's group."""
  request = build_notification_request(payload.title, payload.body, payload.data)
  outcomes = await services.gateway.dispatch_to_group(caller.group_id, payload.role, request, trigger="admin")
  delivered = sum(1 for outcome in outcomes if outcome.delivered)
  return {"attempted": len(outcomes), "delivered": delivered, "failed": len(outcomes) - delivered, "outcomes": [outcome.as_dict() for outcome in outcomes]}
