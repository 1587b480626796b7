import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from jpco_notify.core.firebase import initialize_firebase
from jpco_notify.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Configure logging and the Firebase Admin SDK before serving requests."""
  from jpco_notify.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("jpco_notify.core.lifespan")

  initialize_logging(settings)
  logger.info("Startup environment=%s push_enabled=%s", settings.environment, settings.push_notifications_enabled)

  # Firebase is optional in development; the dispatcher falls back to in-memory stores.
  initialize_firebase(settings)

  yield

  logger.info("Shutdown complete.")
