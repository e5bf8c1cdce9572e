"""Run bookkeeping shared by the text generation orchestrators."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from bookforge.generation.client import GenerationService
from bookforge.generation.contracts import ModelOptions
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.models import GenerationJob, JobUpdate
from bookforge.jobs.progress import ProgressModel
from bookforge.storage.book_cache import BookCache
from bookforge.utils.ids import generate_run_id

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GenerationJob], Awaitable[None] | None]
CompletionCallback = Callable[[GenerationJob], Awaitable[None] | None]


async def _notify(callback: Callable[[GenerationJob], Any] | None, job: GenerationJob) -> None:
  """Invoke a sync or async observer with a job snapshot."""
  if callback is None:
    return
  result = callback(job)
  if inspect.isawaitable(result):
    await result


@dataclass
class RunContext:
  """State owned by one run: progress, its token and the finalize guard."""

  run_id: str
  progress: ProgressModel
  token: CancellationToken
  progress_callback: ProgressCallback | None = None
  finalized: bool = False


class TextOrchestrator:
  """Common contract of the batch and stream orchestrators."""

  mode = "text"

  def __init__(self, service: GenerationService, *, book_cache: BookCache | None = None, on_completed: CompletionCallback | None = None) -> None:
    self.service = service
    self.book_cache = book_cache
    self.on_completed = on_completed

  async def run(self, outline: dict[str, Any], config: dict[str, Any], model_options: ModelOptions, *, book_id: str | None = None, token: CancellationToken | None = None, progress_callback: ProgressCallback | None = None) -> GenerationJob:
    """Drive one book to a terminal or cancelled state."""
    raise NotImplementedError

  def _start_run(self, *, book_id: str | None, token: CancellationToken | None, progress_callback: ProgressCallback | None) -> RunContext:
    """Create the run context, seeding the book id when resuming."""
    progress = ProgressModel(GenerationJob(book_id=book_id))
    context = RunContext(run_id=generate_run_id(), progress=progress, token=token or CancellationToken(), progress_callback=progress_callback)
    logger.info("Starting %s run run_id=%s book_id=%s", self.mode, context.run_id, book_id)
    return context

  async def _apply(self, context: RunContext, update: JobUpdate) -> GenerationJob:
    """Merge an update and publish the new snapshot."""
    job = context.progress.apply(update)
    await _notify(context.progress_callback, job)
    return job

  async def _cancelled(self, context: RunContext) -> GenerationJob:
    """Tag the run cancelled; recorded progress is kept as-is."""
    job = context.progress.mark_cancelled("Generation cancelled")
    logger.info("Run cancelled run_id=%s book_id=%s chapters=%s", context.run_id, job.book_id, job.chapters_completed)
    await _notify(context.progress_callback, job)
    return job

  async def _fail(self, context: RunContext, message: str) -> GenerationJob:
    """Move the run to the error phase and publish it."""
    job = context.progress.fail(message)
    logger.error("Run failed run_id=%s book_id=%s: %s", context.run_id, job.book_id, message)
    await _notify(context.progress_callback, job)
    return job

  async def _finalize(self, context: RunContext) -> None:
    """Run completion side effects once per run, however often completion is observed."""
    if context.finalized:
      return
    context.finalized = True

    job = context.progress.job
    logger.info("Finalizing run run_id=%s book_id=%s chapters=%s", context.run_id, job.book_id, job.chapters_completed)
    # Cached views of this book predate the new chapters.
    if self.book_cache is not None and job.book_id is not None:
      await self.book_cache.invalidate(job.book_id)
    await _notify(self.on_completed, job)
