"""Canonical progress state machine shared by batch and stream generation."""

from __future__ import annotations

from dataclasses import replace

from bookforge.jobs.models import PHASE_ORDER, GenerationJob, JobPhase, JobUpdate

MAX_PROGRESS = 100.0
# Progress stays below 100 until the job is actually completed.
MAX_INCOMPLETE_PROGRESS = 99.0


def _clamp_progress(value: float) -> float:
  return max(0.0, min(float(value), MAX_PROGRESS))


class ProgressModel:
  """Merge partial, possibly out-of-order updates into one consistent job state.

  Fields are last-write-wins except:

  - ``chapters_completed`` and ``progress`` never decrease;
  - ``phase`` only moves forward, with ``error`` reachable from any non-terminal phase;
  - ``book_id`` is fixed once observed;
  - nothing changes after the job reached a terminal phase.
  """

  def __init__(self, initial: GenerationJob | None = None) -> None:
    self._job = replace(initial) if initial is not None else GenerationJob()

  @property
  def job(self) -> GenerationJob:
    """Return a snapshot of the current state."""
    return replace(self._job)

  def apply(self, update: JobUpdate) -> GenerationJob:
    """Merge an update and return the resulting snapshot."""

    current = self._job
    # Terminal states are final for the run; late or duplicate records are ignored.
    if current.is_terminal:
      return self.job

    phase = self._merge_phase(current.phase, update.phase)
    book_id = current.book_id if current.book_id is not None else update.book_id

    chapters_completed = current.chapters_completed
    if update.chapters_completed is not None:
      chapters_completed = max(chapters_completed, int(update.chapters_completed))

    total_chapters = current.total_chapters if update.total_chapters is None else max(int(update.total_chapters), 0)

    progress = current.progress
    if update.progress is not None:
      progress = max(progress, _clamp_progress(update.progress))

    merged = replace(
      current,
      phase=phase,
      book_id=book_id,
      chapters_completed=chapters_completed,
      total_chapters=total_chapters,
      progress=progress,
      message=update.message if update.message is not None else current.message,
      current_batch=update.current_batch if update.current_batch is not None else current.current_batch,
      is_parallel=update.is_parallel if update.is_parallel is not None else current.is_parallel,
      model_used=update.model_used if update.model_used is not None else current.model_used,
      total_words=update.total_words if update.total_words is not None else current.total_words,
      batch_duration=update.batch_duration if update.batch_duration is not None else current.batch_duration,
    )

    self._job = self._settle(merged)
    return self.job

  def mark_cancelled(self, message: str | None = None) -> GenerationJob:
    """Tag the run as cancelled without touching recorded progress."""
    if self._job.is_terminal:
      return self.job
    self._job = replace(self._job, cancelled=True, current_batch=frozenset(), message=message if message is not None else self._job.message)
    return self.job

  def fail(self, message: str) -> GenerationJob:
    """Move the job to the error phase."""
    return self.apply(JobUpdate(phase="error", message=message))

  @staticmethod
  def _merge_phase(current: JobPhase, incoming: JobPhase | None) -> JobPhase:
    if incoming is None:
      return current
    if incoming == "error":
      return incoming
    # Reject regressions caused by stale or reordered records.
    if PHASE_ORDER[incoming] < PHASE_ORDER[current]:
      return current
    return incoming

  @staticmethod
  def _settle(job: GenerationJob) -> GenerationJob:
    """Enforce the completion invariants on a merged state."""

    if job.phase == "completed":
      # A completed book has every chapter; reconcile whichever side is behind.
      total = max(job.total_chapters, job.chapters_completed)
      return replace(job, progress=MAX_PROGRESS, total_chapters=total, chapters_completed=total, current_batch=frozenset())

    if job.progress > MAX_INCOMPLETE_PROGRESS:
      return replace(job, progress=MAX_INCOMPLETE_PROGRESS)

    return job
