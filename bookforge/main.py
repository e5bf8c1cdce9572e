from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from bookforge import __version__
from bookforge.api.deps import build_services
from bookforge.api.routes import audio, generation
from bookforge.config import get_settings
from bookforge.core.exceptions import (
  archive_empty_exception_handler,
  global_exception_handler,
  http_exception_handler,
  request_validation_exception_handler,
  run_conflict_exception_handler,
  upgrade_required_exception_handler,
  voice_not_selected_exception_handler,
)
from bookforge.core.lifespan import lifespan
from bookforge.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from bookforge.jobs.errors import ArchiveEmptyError, VoiceNotSelectedError
from bookforge.services.entitlements import UpgradeRequiredError
from bookforge.services.runs import RunConflictError

settings = get_settings()

app = FastAPI(title="BookForge Engine", version=__version__, lifespan=lifespan)
app.state.services = build_services(settings)

if settings.allowed_origins:
  app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "content-disposition", "x-archive-omitted", "x-archive-omitted-items"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(RunConflictError, run_conflict_exception_handler)
app.add_exception_handler(UpgradeRequiredError, upgrade_required_exception_handler)
app.add_exception_handler(VoiceNotSelectedError, voice_not_selected_exception_handler)
app.add_exception_handler(ArchiveEmptyError, archive_empty_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(generation.router, prefix="/v1/generation", tags=["generation"])
app.include_router(audio.router, prefix="/v1/audio", tags=["audio"])
