"""Generation driven by one long-lived event stream."""

from __future__ import annotations

import logging
from typing import Any

from bookforge.generation.contracts import ModelOptions, StreamRequest
from bookforge.generation.events import BatchEvent, CompleteEvent, CoverEvent, ErrorEvent, StartEvent, StreamDecoder, StreamEvent
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import FatalServiceError, JobCanceledError
from bookforge.jobs.models import GenerationJob, JobUpdate
from bookforge.orchestrators.base import ProgressCallback, RunContext, TextOrchestrator

logger = logging.getLogger(__name__)


class StreamOrchestrator(TextOrchestrator):
  """Consume the service's event stream until completion, an error record or cancellation."""

  mode = "stream"

  async def run(self, outline: dict[str, Any], config: dict[str, Any], model_options: ModelOptions, *, book_id: str | None = None, token: CancellationToken | None = None, progress_callback: ProgressCallback | None = None) -> GenerationJob:
    """Open the stream and apply its records in arrival order.

    Each chunk read runs as the token's in-flight operation, so cancellation aborts
    a pending read; records already decoded stay applied. A stream that ends without a completion
    record raises FatalServiceError carrying the resume state.
    """

    context = self._start_run(book_id=book_id, token=token, progress_callback=progress_callback)
    opening = "Resuming generation..." if book_id else "Connecting to generation service..."
    await self._apply(context, JobUpdate(phase="creating", message=opening, is_parallel=model_options.use_parallel, model_used=model_options.model_id))

    if context.token.cancelled:
      return await self._cancelled(context)

    request = StreamRequest(outline=outline, config=config, model_id=model_options.model_id, generation_speed=model_options.generation_speed, use_parallel=model_options.use_parallel, book_id=book_id)
    decoder = StreamDecoder()

    try:
      async with self.service.stream(request) as chunks:
        iterator = aiter(chunks)
        while True:
          # Each read is the token's in-flight operation, so cancel() interrupts a stalled stream.
          try:
            chunk = await context.token.run(anext, iterator, None)
          except JobCanceledError:
            return await self._cancelled(context)
          if chunk is None:
            break

          for event in decoder.feed(chunk):
            if await self._handle(context, event):
              return context.progress.job

        # The final record may arrive without a trailing newline.
        for event in decoder.flush():
          if await self._handle(context, event):
            return context.progress.job

    except FatalServiceError as exc:
      if exc.job is not None:
        raise
      job = await self._fail(context, exc.message)
      raise FatalServiceError(exc.message, job=job) from exc

    if decoder.dropped_records:
      logger.debug("Stream for run_id=%s dropped %s undecodable records", context.run_id, decoder.dropped_records)

    job = await self._fail(context, "Stream ended before generation completed")
    raise FatalServiceError(job.message, job=job)

  async def _handle(self, context: RunContext, event: StreamEvent) -> bool:
    """Apply one event; return True once the run reached its completion record."""

    if isinstance(event, StartEvent):
      await self._apply(context, JobUpdate(phase="generating", book_id=event.book_id, is_parallel=event.parallel, model_used=event.model, total_chapters=event.total_chapters, message=event.message))
      return False

    if isinstance(event, BatchEvent):
      # A failed batch is reported by the service but does not end the run.
      if event.error:
        logger.warning("Batch %s failed run_id=%s: %s", event.batch, context.run_id, event.error)
        await self._apply(context, JobUpdate(book_id=event.book_id, message=event.message or f"Batch {event.batch} failed: {event.error}"))
        return False

      await self._apply(
        context,
        JobUpdate(
          phase="generating",
          book_id=event.book_id,
          current_batch=event.chapters,
          chapters_completed=event.chapters_completed,
          total_chapters=event.total_chapters,
          progress=event.progress,
          total_words=event.total_words,
          batch_duration=event.batch_duration,
          message=event.message,
        ),
      )
      return False

    if isinstance(event, CoverEvent):
      if event.error:
        logger.warning("Cover %s failed run_id=%s: %s", event.cover_type, context.run_id, event.error)
      await self._apply(context, JobUpdate(phase="cover", book_id=event.book_id, message=event.message))
      return False

    if isinstance(event, CompleteEvent):
      await self._apply(context, JobUpdate(phase="completed", book_id=event.book_id, chapters_completed=event.chapters_completed, total_words=event.total_words, message=event.message))
      await self._finalize(context)
      return True

    if isinstance(event, ErrorEvent):
      job = await self._fail(context, event.error)
      raise FatalServiceError(event.error, job=job)

    # Chapter status, book creation and unrecognized records only carry text and the book id.
    await self._apply(context, JobUpdate(book_id=event.book_id, message=event.message))
    return False
