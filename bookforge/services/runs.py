"""Run control: one active text run and one active audio run per book."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Literal

from bookforge.generation.contracts import ModelOptions
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import AudioGenerationError, FatalServiceError, VoiceNotSelectedError
from bookforge.jobs.models import GenerationJob, ResumeToken, RunStatus
from bookforge.orchestrators.audio import AudioJobOrchestrator, AudioMode, AudioRunResult, ChapterMode
from bookforge.orchestrators.base import TextOrchestrator
from bookforge.services.entitlements import EntitlementGate, require_feature
from bookforge.storage.preferences_repo import AudioPreferences
from bookforge.utils.ids import generate_run_id

logger = logging.getLogger(__name__)

RunKind = Literal["text", "audio"]

# Finished runs stay observable until this many newer runs have finished.
DEFAULT_MAX_FINISHED_RUNS = 200


class RunConflictError(Exception):
  """Raised when a run of the same kind is already active for the book."""

  def __init__(self, kind: RunKind, book_key: str, active_run_id: str) -> None:
    super().__init__(f"A {kind} run is already active for book {book_key}.")
    self.kind = kind
    self.book_key = book_key
    self.active_run_id = active_run_id


@dataclass
class RunHandle:
  """Registry view of one run, updated from the orchestrator's progress callback."""

  run_id: str
  kind: RunKind
  mode: str
  book_key: str
  token: CancellationToken
  status: RunStatus = "running"
  job: GenerationJob | None = None
  audio: AudioRunResult | None = None
  error: str | None = None
  hint: str | None = None
  resume_token: ResumeToken | None = None
  task: asyncio.Task[None] | None = field(default=None, repr=False)

  @property
  def is_active(self) -> bool:
    return self.status == "running"


class RunRegistry:
  """Start, observe and cancel orchestration runs as background tasks."""

  def __init__(self, gate: EntitlementGate, *, max_finished_runs: int = DEFAULT_MAX_FINISHED_RUNS) -> None:
    self.gate = gate
    self.max_finished_runs = max_finished_runs
    self._runs: dict[str, RunHandle] = {}
    self._active: dict[tuple[RunKind, str], str] = {}
    self._finished: deque[str] = deque()

  def get(self, run_id: str) -> RunHandle | None:
    return self._runs.get(run_id)

  def active_run(self, kind: RunKind, book_key: str) -> RunHandle | None:
    """Return the active run of ``kind`` for a book, if any."""
    run_id = self._active.get((kind, book_key))
    return self._runs.get(run_id) if run_id is not None else None

  def start_text_run(self, orchestrator: TextOrchestrator, *, outline: dict[str, Any], config: dict[str, Any], model_options: ModelOptions, book_id: str | None = None) -> RunHandle:
    """Start a batch or stream run; ``book_id`` continues an existing book."""

    require_feature(self.gate, "continue-generation" if book_id else "generate-book")
    run_id = generate_run_id()
    # New books have no id yet; key them by run until the service assigns one.
    handle = RunHandle(run_id=run_id, kind="text", mode=orchestrator.mode, book_key=book_id or run_id, token=CancellationToken())
    self._claim(handle)

    async def _on_progress(job: GenerationJob) -> None:
      handle.job = job
      if job.book_id is not None and job.book_id != handle.book_key:
        self._alias(handle, job.book_id)

    handle.task = asyncio.create_task(self._drive_text(handle, orchestrator.run(outline, config, model_options, book_id=book_id, token=handle.token, progress_callback=_on_progress)))
    return handle

  def start_audio_run(self, orchestrator: AudioJobOrchestrator, *, mode: AudioMode, voice_params: AudioPreferences | None = None) -> RunHandle:
    """Start a narration run for the orchestrator's book."""

    require_feature(self.gate, "audiobook")
    params = voice_params or orchestrator.preferences
    if not params.voice:
      raise VoiceNotSelectedError("Select a voice before generating audio.")

    handle = RunHandle(run_id=generate_run_id(), kind="audio", mode="chapters" if isinstance(mode, ChapterMode) else "full", book_key=orchestrator.book_id, token=CancellationToken())
    self._claim(handle)

    def _on_progress(result: AudioRunResult) -> None:
      handle.audio = result

    handle.task = asyncio.create_task(self._drive_audio(handle, orchestrator.run(mode, params, token=handle.token, progress_callback=_on_progress)))
    return handle

  def cancel(self, run_id: str) -> RunHandle | None:
    """Request cancellation; the run settles as cancelled with its progress intact."""
    handle = self._runs.get(run_id)
    if handle is None:
      return None
    if handle.is_active:
      logger.info("Cancelling %s run run_id=%s book=%s", handle.kind, run_id, handle.book_key)
      handle.token.cancel()
    return handle

  async def shutdown(self) -> None:
    """Cancel every active run and wait for the tasks to settle."""
    tasks = []
    for handle in self._runs.values():
      if handle.is_active:
        handle.token.cancel()
      if handle.task is not None and not handle.task.done():
        tasks.append(handle.task)
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)

  def _claim(self, handle: RunHandle) -> None:
    existing = self._active.get((handle.kind, handle.book_key))
    if existing is not None:
      raise RunConflictError(handle.kind, handle.book_key, existing)
    self._runs[handle.run_id] = handle
    self._active[(handle.kind, handle.book_key)] = handle.run_id

  def _alias(self, handle: RunHandle, book_id: str) -> None:
    """Also hold the book id key once a new book has been created."""
    key = (handle.kind, book_id)
    if key not in self._active:
      self._active[key] = handle.run_id

  def _release(self, handle: RunHandle) -> None:
    """Free the book keys and evict the oldest finished runs beyond the retention bound."""
    for key, run_id in list(self._active.items()):
      if run_id == handle.run_id:
        del self._active[key]

    handle.task = None
    self._finished.append(handle.run_id)
    while len(self._finished) > self.max_finished_runs:
      evicted = self._finished.popleft()
      self._runs.pop(evicted, None)
      logger.debug("Evicted finished run run_id=%s", evicted)

  async def _drive_text(self, handle: RunHandle, run: Awaitable[GenerationJob]) -> None:
    try:
      job = await run
      handle.job = job
      handle.status = job.status
      handle.resume_token = job.resume_token() if job.status == "cancelled" else None
    except FatalServiceError as exc:
      handle.job = exc.job or handle.job
      handle.status = "error"
      handle.error = exc.message
      handle.resume_token = exc.resume_token
    except Exception:  # noqa: BLE001
      logger.error("Text run failed run_id=%s", handle.run_id, exc_info=True)
      handle.status = "error"
      handle.error = "Generation failed"
      handle.resume_token = handle.job.resume_token() if handle.job is not None else None
    finally:
      self._release(handle)

  async def _drive_audio(self, handle: RunHandle, run: Awaitable[AudioRunResult]) -> None:
    try:
      result = await run
      handle.audio = result
      handle.status = "cancelled" if result.cancelled else "completed"
    except AudioGenerationError as exc:
      if handle.audio is not None:
        handle.audio.completed = list(exc.completed)
      handle.status = "error"
      handle.error = exc.message
      handle.hint = exc.hint
    except Exception as exc:  # noqa: BLE001
      logger.error("Audio run failed run_id=%s", handle.run_id, exc_info=True)
      handle.status = "error"
      handle.error = str(exc) if isinstance(exc, ValueError) else "Audio generation failed"
    finally:
      self._release(handle)
