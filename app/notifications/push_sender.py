"""Push notification delivery implementations."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from http import HTTPStatus

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging
from pywebpush import WebPushException, webpush

from app.notifications.contracts import GatewayChannel, InvalidTargetError, OutboundPush, PushSender, RecipientGoneError, TransientNetworkError, WebPushChannel, redact_channel_key
from app.notifications.payloads import build_gateway_message, build_webpush_payload, webpush_headers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VapidConfig:
  """Configuration required to sign Web Push requests."""

  public_key: str
  private_key: str
  sub: str


class WebPushSender(PushSender):
  """`pywebpush` backed sender for raw browser endpoints."""

  def __init__(self, *, vapid_config: VapidConfig, timeout_seconds: float = 10.0, backoff_seconds: tuple[float, ...] = (0.5, 1.0)) -> None:
    self._vapid_config = vapid_config
    self._timeout_seconds = timeout_seconds
    self._backoff_seconds = backoff_seconds

  def send(self, push: OutboundPush) -> str:
    """Send a Web Push payload with bounded retries for transient failures."""
    channel = push.channel
    if not isinstance(channel, WebPushChannel):
      raise InvalidTargetError(f"WebPushSender cannot deliver to a {channel.kind} channel")

    subscription_info = {"endpoint": channel.endpoint, "keys": {"p256dh": channel.p256dh, "auth": channel.auth}}
    data = json.dumps(build_webpush_payload(push))

    for attempt in range(len(self._backoff_seconds) + 1):
      try:
        # Send with VAPID signing so browser push services can verify origin.
        response = webpush(
          subscription_info=subscription_info,
          data=data,
          vapid_private_key=self._vapid_config.private_key,
          vapid_claims={"sub": self._vapid_config.sub},
          timeout=self._timeout_seconds,
          ttl=push.hints.ttl_seconds,
          headers=webpush_headers(push.hints),
        )
      except WebPushException as exc:
        status_code = _extract_status_code(exc)

        if status_code in {HTTPStatus.GONE, HTTPStatus.NOT_FOUND}:
          raise RecipientGoneError(f"Push subscription is no longer registered (status={status_code})") from exc

        if status_code is not None and 500 <= status_code < 600 and attempt < len(self._backoff_seconds):
          time.sleep(self._backoff_seconds[attempt])
          continue

        raise TransientNetworkError(f"Push delivery failed (status={status_code if status_code else 'unknown'})") from exc
      except OSError as exc:
        # requests connection and timeout errors derive from OSError.
        raise TransientNetworkError(f"Push endpoint unreachable: {exc}") from exc

      return _message_id_from_response(response)

    raise TransientNetworkError("Push delivery retries exhausted")


class GatewayPushSender(PushSender):
  """firebase-admin messaging sender for gateway-issued tokens."""

  def __init__(self, *, app: object | None = None) -> None:
    self._app = app

  def send(self, push: OutboundPush) -> str:
    channel = push.channel
    if not isinstance(channel, GatewayChannel):
      raise InvalidTargetError(f"GatewayPushSender cannot deliver to a {channel.kind} channel")

    try:
      message = build_gateway_message(push, channel.token)
      return messaging.send(message, dry_run=push.probe, app=self._app)
    except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as exc:
      raise RecipientGoneError(f"Gateway token is no longer registered: {exc}") from exc
    except (ValueError, firebase_exceptions.InvalidArgumentError) as exc:
      raise InvalidTargetError(f"Gateway rejected the message: {exc}") from exc
    except firebase_exceptions.FirebaseError as exc:
      raise TransientNetworkError(f"Gateway delivery failed ({exc.code}): {exc}") from exc


class NullPushSender(PushSender):
  """Sender used when a transport is disabled or unconfigured."""

  def __init__(self, *, transport: str) -> None:
    self._transport = transport

  def send(self, push: OutboundPush) -> str:
    logger.debug("%s transport disabled; dropping push channel=%s", self._transport, redact_channel_key(push.channel.key))
    raise TransientNetworkError(f"{self._transport} transport is not configured")


def _extract_status_code(exc: WebPushException) -> int | None:
  """Extract an HTTP status code from a pywebpush exception when available."""
  response = getattr(exc, "response", None)
  if response is None:
    return None

  status = getattr(response, "status_code", None)
  if isinstance(status, int):
    return status

  return None


def _message_id_from_response(response: object) -> str:
  # Push services return the message resource in Location; fall back to a local id.
  headers = getattr(response, "headers", None) or {}
  location = headers.get("Location") if hasattr(headers, "get") else None
  return str(location) if location else f"webpush-{uuid.uuid4()}"
