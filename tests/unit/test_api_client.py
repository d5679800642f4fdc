from __future__ import annotations

import json

import httpx
import pytest

from app.client.api_client import SUBSCRIBER_PATH, SubscriberApiClient
from app.client.runtime import UserContext
from app.notifications.contracts import PlatformHint, ServerInternalError, TransientNetworkError, UnauthenticatedError
from tests.conftest import gateway_channel, webpush_channel

USER = UserContext(subject_id="admin-1", id_token="id-token")


@pytest.mark.anyio
async def test_save_channel_sends_bearer_token_and_tagged_channel():
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(204)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    api = SubscriberApiClient(base_url="https://api.barber.example.com", client=client)
    await api.save_channel(USER, webpush_channel("a"), platform=PlatformHint.MOBILE, standalone=True)
    await api.clear_channel(USER)

  put, delete = seen
  assert put.method == "PUT"
  assert put.url.path == SUBSCRIBER_PATH
  assert put.headers["authorization"] == "Bearer id-token"
  body = json.loads(put.content)
  assert body["channel"]["kind"] == "webpush"
  assert body["channel"]["keys"]["auth"] == webpush_channel("a").auth
  assert (body["platform"], body["standalone"]) == ("mobile", True)
  assert delete.method == "DELETE"


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("response", "error"),
  [
    (httpx.Response(401), UnauthenticatedError),
    (httpx.Response(503), TransientNetworkError),
    (httpx.Response(422, json={"detail": []}), ServerInternalError),
  ],
)
async def test_error_statuses_map_to_taxonomy(response, error):
  async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as client:
    api = SubscriberApiClient(base_url="https://api.barber.example.com", client=client)
    with pytest.raises(error):
      await api.save_channel(USER, gateway_channel("a"), platform=PlatformHint.DESKTOP, standalone=False)


@pytest.mark.anyio
async def test_unreachable_api_is_transient():
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectTimeout("timed out", request=request)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    api = SubscriberApiClient(base_url="https://api.barber.example.com", client=client)
    with pytest.raises(TransientNetworkError):
      await api.clear_channel(USER)


@pytest.mark.anyio
async def test_save_channel_sends_device_user_agent():
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(204)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    api = SubscriberApiClient(base_url="https://api.barber.example.com", client=client)
    await api.save_channel(USER, gateway_channel("a"), platform=PlatformHint.MOBILE, standalone=True, user_agent="Mozilla/5.0 (iPhone)")

  assert seen[0].headers["user-agent"] == "Mozilla/5.0 (iPhone)"
