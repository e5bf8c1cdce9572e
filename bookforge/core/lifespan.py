import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bookforge.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging on startup and settle background runs on shutdown."""
  services = app.state.services
  logger = logging.getLogger("bookforge.core.lifespan")

  try:
    log_path = initialize_logging(services.settings)
    logger.info("Startup complete - logging to %s", log_path)
  except OSError:
    # A read-only log directory should not keep the service from starting.
    logger.warning("File logging setup failed; continuing with console logging.", exc_info=True)

  yield

  # Cancel in-flight runs so their tokens abort outstanding requests.
  await services.registry.shutdown()
  aclose = getattr(services.generation_service, "aclose", None)
  if aclose is not None:
    await aclose()
  logger.info("Shutdown complete.")
