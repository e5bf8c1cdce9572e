import logging
import mimetypes
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.responses import Response

from bookforge.api.deps import EngineServices, get_registry, get_services
from bookforge.api.models import ArchiveManifestResponse, ArchiveRequest, AudioRunRequest, AudioRunResponse, RunCreatedResponse
from bookforge.orchestrators.audio import AudioJobOrchestrator, AudioMode, ChapterMode, FullBookMode
from bookforge.services.archive import ArchiveItem, OmittedItem
from bookforge.services.runs import RunRegistry

router = APIRouter()
logger = logging.getLogger("bookforge.api.routes.audio")

OMITTED_HEADER = "X-Archive-Omitted"
OMITTED_ITEMS_HEADER = "X-Archive-Omitted-Items"


def _resolve_mode(request: AudioRunRequest, orchestrator: AudioJobOrchestrator) -> AudioMode:
  """Translate the request into a narration mode, validating chapter selection."""
  if request.mode == "full":
    return FullBookMode()

  selected = orchestrator.missing_chapters() if request.select_missing else (request.chapter_numbers or [])
  if not selected:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="No chapters selected for narration.")

  known = {chapter.chapter_number for chapter in orchestrator.chapters}
  unknown = sorted(set(selected) - known)
  if unknown:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown chapters: {unknown}")

  return ChapterMode(selected)


def _omitted_label(omission: OmittedItem) -> str:
  """Name an omitted item by chapter number, or by its escaped locator when unnumbered."""
  if omission.item.number is not None:
    return str(omission.item.number)
  return quote(omission.item.locator, safe=":/")


@router.post("/runs", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_audio_run(request: AudioRunRequest, services: EngineServices = Depends(get_services)) -> RunCreatedResponse:  # noqa: B008
  """Start a background narration run for a book."""
  orchestrator = AudioJobOrchestrator(
    services.generation_service,
    book_id=request.book_id,
    user_id=request.user_id,
    chapters=[chapter.to_state() for chapter in request.chapters],
    preferences_repo=services.preferences_repo,
    request_timeout_seconds=services.settings.audio_request_timeout_seconds,
  )
  overrides = {"provider": request.provider, "voice": request.voice, "speed": request.speed, "quality": request.quality}
  mode = _resolve_mode(request, orchestrator)
  handle = services.registry.start_audio_run(orchestrator, mode=mode, voice_params=orchestrator.preferences.merged(**overrides))
  # Overrides become the book's remembered preferences only once the run was accepted.
  if any(value is not None for value in overrides.values()):
    orchestrator.update_preferences(**overrides)
  logger.info("Accepted %s narration run run_id=%s book_id=%s", handle.mode, handle.run_id, request.book_id)
  return RunCreatedResponse(run_id=handle.run_id, kind=handle.kind, mode=handle.mode, status=handle.status)


@router.get("/runs/{run_id}", response_model=AudioRunResponse)
async def get_audio_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> AudioRunResponse:  # noqa: B008
  """Return progress and completed chapters of a narration run."""
  handle = registry.get(run_id)
  if handle is None or handle.kind != "audio":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
  return AudioRunResponse.from_handle(handle)


@router.post("/runs/{run_id}/cancel", response_model=AudioRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_audio_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> AudioRunResponse:  # noqa: B008
  """Abort the in-flight narration request; completed chapters are kept."""
  handle = registry.get(run_id)
  if handle is None or handle.kind != "audio":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
  registry.cancel(run_id)
  return AudioRunResponse.from_handle(handle)


@router.post("/archives", response_model=None)
async def build_audio_archive(request: ArchiveRequest, services: EngineServices = Depends(get_services)) -> Response | ArchiveManifestResponse:  # noqa: B008
  """Return one file, a zip bundle, or a manifest of individual downloads."""
  items = [ArchiveItem(locator=item.audio_url, suggested_name=item.title, number=item.chapter_number) for item in request.items]
  result = await services.archive_builder().build(items, book_title=request.book_title)

  if result.kind == "individual":
    return ArchiveManifestResponse.from_result(result)

  filename = result.filename or "download"
  media_type = "application/zip" if result.kind == "bundle" else (mimetypes.guess_type(filename)[0] or "application/octet-stream")
  headers = {"Content-Disposition": f'attachment; filename="{filename}"', OMITTED_HEADER: str(len(result.omitted)), OMITTED_ITEMS_HEADER: ",".join(_omitted_label(omission) for omission in result.omitted)}
  return Response(content=result.content or b"", media_type=media_type, headers=headers)
