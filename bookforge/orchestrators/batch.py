"""Incremental generation by repeated request/response "advance" calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from bookforge.generation.client import GenerationService
from bookforge.generation.contracts import AdvanceRequest, AdvanceResponse, ModelOptions
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import FatalServiceError, JobCanceledError, TransientServiceError
from bookforge.jobs.models import GenerationJob, JobUpdate
from bookforge.orchestrators.base import CompletionCallback, ProgressCallback, RunContext, TextOrchestrator
from bookforge.storage.book_cache import BookCache

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_MAX_CONSECUTIVE_ERRORS = 3


@dataclass
class RetryState:
  """Consecutive failure count compared against a fixed bound."""

  max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
  consecutive_error_count: int = 0

  def record_failure(self) -> bool:
    """Count a failure and return True while another attempt is allowed."""
    self.consecutive_error_count += 1
    return self.consecutive_error_count < self.max_consecutive_errors

  def reset(self) -> None:
    self.consecutive_error_count = 0


class BatchOrchestrator(TextOrchestrator):
  """Advance a book one server-side batch at a time until it completes."""

  mode = "batch"

  def __init__(
    self,
    service: GenerationService,
    *,
    book_cache: BookCache | None = None,
    on_completed: CompletionCallback | None = None,
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
  ) -> None:
    super().__init__(service, book_cache=book_cache, on_completed=on_completed)
    self.retry_delay_seconds = retry_delay_seconds
    self.poll_interval_seconds = poll_interval_seconds
    self.max_consecutive_errors = max_consecutive_errors
    self.retry_state = RetryState(max_consecutive_errors=max_consecutive_errors)

  async def run(self, outline: dict[str, Any], config: dict[str, Any], model_options: ModelOptions, *, book_id: str | None = None, token: CancellationToken | None = None, progress_callback: ProgressCallback | None = None) -> GenerationJob:
    """Loop advance calls until completion, cancellation or a fatal error.

    Raises FatalServiceError once the consecutive failure bound is reached; the error
    carries the last known book id and progress so the caller can resume with ``book_id``.
    """

    context = self._start_run(book_id=book_id, token=token, progress_callback=progress_callback)
    self.retry_state = RetryState(max_consecutive_errors=self.max_consecutive_errors)
    opening = "Resuming generation..." if book_id else "Creating your book..."
    await self._apply(context, JobUpdate(phase="creating", message=opening, is_parallel=model_options.use_parallel, model_used=model_options.model_id))

    while True:
      # Top of each iteration, including after a retry delay.
      if context.token.cancelled:
        return await self._cancelled(context)

      request = self._build_request(outline, config, model_options, context.progress.job.book_id)
      try:
        response = await context.token.run(self.service.advance, request)
      except JobCanceledError:
        return await self._cancelled(context)
      except TransientServiceError as exc:
        await self._handle_failure(context, exc)
        await asyncio.sleep(self.retry_delay_seconds)
        continue

      self.retry_state.reset()
      job = await self._apply(context, self._to_update(response))

      if job.phase == "completed":
        await self._finalize(context)
        return context.progress.job

      if job.phase == "error":
        raise FatalServiceError(job.message or "Generation failed", job=job)

      await asyncio.sleep(self.poll_interval_seconds)

  def _build_request(self, outline: dict[str, Any], config: dict[str, Any], model_options: ModelOptions, book_id: str | None) -> AdvanceRequest:
    """Build the advance payload; the book id is omitted until the service assigns one."""
    return AdvanceRequest(outline=outline, config=config, model_id=model_options.model_id, generation_speed=model_options.generation_speed, use_parallel=model_options.use_parallel, book_id=book_id)

  async def _handle_failure(self, context: RunContext, exc: TransientServiceError) -> None:
    """Count a failed call; escalate to FatalServiceError at the bound."""
    if not self.retry_state.record_failure():
      job = await self._fail(context, exc.message)
      raise FatalServiceError(exc.message, job=job) from exc

    attempt = self.retry_state.consecutive_error_count
    logger.warning("Advance failed run_id=%s book_id=%s attempt=%s/%s: %s", context.run_id, context.progress.job.book_id, attempt, self.max_consecutive_errors, exc.message)
    await self._apply(context, JobUpdate(message=f"Retrying... ({attempt}/{self.max_consecutive_errors})"))

  @staticmethod
  def _to_update(response: AdvanceResponse) -> JobUpdate:
    return JobUpdate(
      phase=response.phase,
      book_id=response.book_id,
      chapters_completed=response.chapters_completed,
      total_chapters=response.total_chapters,
      progress=response.progress,
      message=response.message,
    )
