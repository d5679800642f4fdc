"""Shared FastAPI dependencies for push services."""

from __future__ import annotations

import logging
from functools import lru_cache

from app.config import get_settings
from app.notifications.factory import PushServices, build_push_services

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_push_services() -> PushServices:
  """Build push services once per process so the in-memory registry is shared."""
  services = build_push_services(get_settings())
  logger.info("Push services ready registry=%s", type(services.registry).__name__)
  return services
