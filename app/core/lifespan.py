import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.database import dispose_engine
from app.core.firebase import initialize_firebase
from app.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and Firebase before serving; drain probes and close the pool on shutdown."""
  from app.api.deps import get_push_services
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  initialize_logging(settings)
  logger.info("Startup complete - logging verified. environment=%s", settings.environment)

  if settings.gateway_notifications_enabled or settings.firebase_project_id:
    initialize_firebase()

  services = get_push_services()

  yield

  await services.reconciliation.drain()
  await dispose_engine()
  logger.info("Shutdown complete.")
