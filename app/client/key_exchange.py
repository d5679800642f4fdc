"""Fetch and cache the VAPID public key the push service subscribes against."""

from __future__ import annotations

import base64
import logging

import httpx

from app.notifications.contracts import ServerInternalError, TransientNetworkError

logger = logging.getLogger(__name__)

PUBLIC_KEY_PATH = "/v1/push/public-key"


def url_base64_to_bytes(value: str) -> bytes:
  """Decode an unpadded base64url string, as push services expect for ``applicationServerKey``."""
  padded = value.strip() + "=" * (-len(value.strip()) % 4)
  try:
    return base64.urlsafe_b64decode(padded)
  except (ValueError, TypeError) as exc:
    raise ServerInternalError(f"Public key is not valid base64url: {exc}") from exc


class KeyExchangeService:
  """Owns the public key for one process; the first successful fetch is kept for its lifetime."""

  def __init__(self, *, base_url: str, client: httpx.AsyncClient | None = None, timeout_seconds: float = 10.0) -> None:
    self._url = f"{base_url.rstrip('/')}{PUBLIC_KEY_PATH}"
    self._client = client
    self._timeout_seconds = timeout_seconds
    self._public_key: str | None = None

  @property
  def cached_key(self) -> str | None:
    return self._public_key

  async def get_public_key(self) -> str:
    """Return the key, fetching it once.

    Raises ``TransientNetworkError`` when the endpoint is unreachable and
    ``ServerInternalError`` for a non-2xx status or a body without ``publicKey``.
    """
    if self._public_key is not None:
      return self._public_key

    try:
      if self._client is not None:
        response = await self._client.get(self._url, timeout=self._timeout_seconds)
      else:
        async with httpx.AsyncClient(trust_env=False) as client:
          response = await client.get(self._url, timeout=self._timeout_seconds)
    except httpx.RequestError as exc:
      logger.warning("Public key fetch failed url=%s error=%s", self._url, exc)
      raise TransientNetworkError(f"Could not reach {self._url}: {exc}") from exc

    if response.is_error:
      raise ServerInternalError(f"Public key endpoint returned {response.status_code}")

    try:
      body = response.json()
    except ValueError as exc:
      raise ServerInternalError("Public key endpoint returned a non-JSON body") from exc

    public_key = body.get("publicKey") if isinstance(body, dict) else None
    if not isinstance(public_key, str) or not public_key.strip():
      raise ServerInternalError("Public key endpoint response is missing 'publicKey'")

    self._public_key = public_key.strip()
    logger.info("Public key fetched and cached (length=%s)", len(self._public_key))
    return self._public_key

  async def get_application_server_key(self) -> bytes:
    return url_base64_to_bytes(await self.get_public_key())
