import logging

from fastapi import APIRouter, Depends, HTTPException, status

from bookforge.api.deps import EngineServices, get_registry, get_services
from bookforge.api.models import GenerationRunRequest, GenerationRunResponse, RunCreatedResponse
from bookforge.generation.contracts import ModelOptions
from bookforge.services.runs import RunRegistry

router = APIRouter()
logger = logging.getLogger("bookforge.api.routes.generation")


@router.post("/runs", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation_run(request: GenerationRunRequest, services: EngineServices = Depends(get_services)) -> RunCreatedResponse:  # noqa: B008
  """Start a background book generation run, or resume one when bookId is given."""
  orchestrator = services.text_orchestrator(request.mode)
  model_options = ModelOptions(model_id=request.model_id, generation_speed=request.generation_speed, use_parallel=request.use_parallel)
  handle = services.registry.start_text_run(orchestrator, outline=request.outline, config=request.config, model_options=model_options, book_id=request.book_id)
  logger.info("Accepted %s generation run run_id=%s book_id=%s", handle.mode, handle.run_id, request.book_id)
  return RunCreatedResponse(run_id=handle.run_id, kind=handle.kind, mode=handle.mode, status=handle.status)


@router.get("/runs/{run_id}", response_model=GenerationRunResponse)
async def get_generation_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> GenerationRunResponse:  # noqa: B008
  """Return progress, status and resume state of a generation run."""
  handle = registry.get(run_id)
  if handle is None or handle.kind != "text":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
  return GenerationRunResponse.from_handle(handle)


@router.post("/runs/{run_id}/cancel", response_model=GenerationRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_generation_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> GenerationRunResponse:  # noqa: B008
  """Request cancellation; chapters already generated are kept."""
  handle = registry.get(run_id)
  if handle is None or handle.kind != "text":
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
  registry.cancel(run_id)
  return GenerationRunResponse.from_handle(handle)
