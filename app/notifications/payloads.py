"""Build normalized notification requests and platform-specific payloads."""

from __future__ import annotations

import urllib.parse
from collections.abc import Mapping
from typing import Any

from firebase_admin import messaging

from app.notifications.contracts import DeliveryTarget, InvalidTargetError, NotificationRequest, OutboundPush, PlatformHint, PlatformHints

APP_NAME = "Barbershop App"
DEFAULT_BODY = "You have a new notification"
ANDROID_CHANNEL_ID = "barbershop_channel"

MOBILE_PUSH = PlatformHints(profile="mobile-push", priority="high", urgency="high", ttl_seconds=3600, sound="default", icon="/logo.png", badge="/badge.png", vibrate=(200, 100, 200), require_interaction=True)
DESKTOP_PUSH = PlatformHints(profile="desktop-push", priority="high", urgency="normal", ttl_seconds=3600, sound=None, icon="/logo.png", badge="/badge.png", vibrate=(), require_interaction=True)
INSTALLED_APP = PlatformHints(
  profile="installed-app", priority="high", urgency="high", ttl_seconds=3600, sound="default", icon="/icons/app-192.png", badge="/badge.png", vibrate=(200, 100, 200, 100, 200), require_interaction=True, tag="barberbell", renotify=True
)
VALIDATION_PROBE = PlatformHints(profile="probe", priority="normal", urgency="very-low", ttl_seconds=0, sound=None, icon="/badge.png", badge="/badge.png", vibrate=(), require_interaction=False)


def build_notification_request(title: str | None, body: str | None, data: Mapping[str, Any] | None = None, *, default_title: str | None = None, default_body: str | None = None) -> NotificationRequest:
  """Normalize caller input so every request carries string data and a deep link."""
  resolved_title = (title or "").strip() or (default_title or "").strip()
  resolved_body = (body or "").strip() or (default_body or "").strip()
  if not resolved_title or not resolved_body:
    raise InvalidTargetError("Notification title and body are required.")

  # Gateway data maps only accept string values.
  normalized = {str(key): "" if value is None else str(value) for key, value in (data or {}).items()}
  url = normalized.get("url", "").strip() or "/"
  if not _is_navigable(url):
    raise InvalidTargetError(f"Notification url must be a site path or https URL: {url!r}")

  normalized["url"] = url
  return NotificationRequest(title=resolved_title, body=resolved_body, data=normalized)


def _is_navigable(url: str) -> bool:
  if url.startswith("/") and not url.startswith("//"):
    return True

  parsed = urllib.parse.urlparse(url)
  return parsed.scheme == "https" and bool(parsed.netloc)


def hints_for(target: DeliveryTarget) -> PlatformHints:
  """Pick the hint profile for a recipient; installed apps win over the platform."""
  if target.standalone:
    return INSTALLED_APP

  if target.platform == PlatformHint.MOBILE:
    return MOBILE_PUSH

  return DESKTOP_PUSH


def absolute_link(url: str, public_base_url: str | None) -> str | None:
  """Resolve a deep link to an https URL, or None when that is not possible."""
  if url.startswith("https://"):
    return url

  if public_base_url is None:
    return None

  return urllib.parse.urljoin(f"{public_base_url}/", url.lstrip("/"))


def build_outbound(target: DeliveryTarget, request: NotificationRequest, *, public_base_url: str | None = None, probe: bool = False) -> OutboundPush:
  hints = VALIDATION_PROBE if probe else hints_for(target)
  return OutboundPush(channel=target.channel, request=request, hints=hints, link=absolute_link(request.url, public_base_url), probe=probe)


def build_webpush_payload(push: OutboundPush) -> dict[str, Any]:
  """JSON body read by the service worker's push handler."""
  if push.probe:
    return {"type": "validation_probe", "silent": True}

  request = push.request
  hints = push.hints
  payload: dict[str, Any] = {
    "title": request.title,
    "body": request.body,
    "icon": hints.icon,
    "badge": hints.badge,
    "url": request.url,
    "requireInteraction": hints.require_interaction,
    "data": dict(request.data),
    "profile": hints.profile,
    "timestamp": push.sent_at.isoformat(),
  }
  if hints.vibrate:
    payload["vibrate"] = list(hints.vibrate)
  if hints.tag:
    payload["tag"] = hints.tag
    payload["renotify"] = hints.renotify
  if hints.sound:
    payload["sound"] = hints.sound
  return payload


def webpush_headers(hints: PlatformHints) -> dict[str, str]:
  return {"Urgency": hints.urgency}


def build_gateway_message(push: OutboundPush, token: str) -> messaging.Message:
  """Translate an outbound push into a firebase-admin message for one token."""
  hints = push.hints
  if push.probe:
    # Data-only, normal priority: validates the token without alerting anyone.
    return messaging.Message(token=token, data={"type": "validation_probe"}, android=messaging.AndroidConfig(priority="normal"), apns=messaging.APNSConfig(headers={"apns-priority": "5"}))

  request = push.request
  fcm_options = messaging.WebpushFCMOptions(link=push.link) if push.link else None
  webpush_notification = messaging.WebpushNotification(
    title=request.title,
    body=request.body,
    icon=hints.icon,
    badge=hints.badge,
    vibrate=list(hints.vibrate) or None,
    require_interaction=hints.require_interaction,
    tag=hints.tag,
    renotify=hints.renotify if hints.tag else None,
  )
  return messaging.Message(
    token=token,
    notification=messaging.Notification(title=request.title, body=request.body),
    data=dict(request.data),
    android=messaging.AndroidConfig(
      priority=hints.priority,
      ttl=hints.ttl_seconds,
      notification=messaging.AndroidNotification(sound=hints.sound, channel_id=ANDROID_CHANNEL_ID, vibrate_timings_millis=list(hints.vibrate) or None),
    ),
    apns=messaging.APNSConfig(headers={"apns-priority": "10" if hints.priority == "high" else "5"}, payload=messaging.APNSPayload(aps=messaging.Aps(sound=hints.sound, badge=1, content_available=True))),
    webpush=messaging.WebpushConfig(headers={"Urgency": hints.urgency, "TTL": str(hints.ttl_seconds)}, notification=webpush_notification, fcm_options=fcm_options),
  )
