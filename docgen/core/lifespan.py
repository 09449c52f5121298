import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from docgen.core.container import build_container
from docgen.core.errors import ConfigurationError
from docgen.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build the service graph, optionally start the poller, and drain it on shutdown."""
  from docgen.config import get_settings

  # Load settings for startup initialization.
  settings = get_settings()
  # Create a module logger for lifespan events.
  logger = logging.getLogger("docgen.core.lifespan")

  # Initialize logging with configured settings.
  initialize_logging(settings)

  try:
    container = build_container(settings)
  except ConfigurationError:
    # Fail fast when platform credentials are missing or malformed.
    logger.error("Platform authentication is not configured; refusing to start the service.", exc_info=True)
    raise

  app.state.services = container
  logger.info("Startup complete (environment=%s).", settings.environment)

  # Start the scheduler only when this instance is meant to process the queue.
  if settings.poller_enabled:
    await container.poller.start()

  try:
    yield
  finally:
    # Stop leasing and let in-flight jobs finish before closing the HTTP client.
    await container.aclose()
    logger.info("Shutdown complete.")
