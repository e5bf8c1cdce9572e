"""Error taxonomy for generation, narration and archive runs."""

from __future__ import annotations

from collections.abc import Sequence

from bookforge.jobs.models import AudioChapterState, GenerationJob, ResumeToken


class GenerationError(RuntimeError):
  """Base class for failures raised by the orchestration engine."""

  def __init__(self, message: str, *, job: GenerationJob | None = None, book_id: str | None = None, chapter_number: int | None = None, hint: str | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.job = job
    self.book_id = book_id if book_id is not None else (job.book_id if job is not None else None)
    self.chapter_number = chapter_number
    self.hint = hint


class TransientServiceError(GenerationError):
  """Retryable failure talking to the generation service."""


class FatalServiceError(GenerationError):
  """Run-ending failure; carries the last known progress so callers can resume."""

  @property
  def resume_token(self) -> ResumeToken | None:
    """Return the resume token when a book id is known."""
    if self.job is not None:
      return self.job.resume_token()
    if self.book_id is None:
      return None
    return ResumeToken(book_id=self.book_id, chapters_completed=0, total_chapters=0, progress=0.0)


class StreamParseError(GenerationError):
  """A stream record could not be decoded; dropped by the decoder."""


class JobCanceledError(Exception):
  """Raised when a run is canceled by the user."""


class AudioGenerationError(GenerationError):
  """Base class for narration failures; each subclass has its own remediation."""

  default_hint = "Try again in a few minutes."

  def __init__(self, message: str, *, chapter_number: int | None = None, hint: str | None = None, book_id: str | None = None, completed: Sequence[AudioChapterState] = ()) -> None:
    super().__init__(message, book_id=book_id, chapter_number=chapter_number, hint=hint or self.default_hint)
    self.completed = list(completed)


class AudioTimeoutError(AudioGenerationError):
  """The narration request exceeded its deadline."""

  default_hint = "Narration timed out. Reduce the number of chapters per request and try again."


class AudioNetworkError(AudioGenerationError):
  """The narration request failed at the transport level."""

  default_hint = "Could not reach the narration service. Check your connectivity and try again."


class ServiceReportedError(AudioGenerationError):
  """The narration service answered with an explicit failure."""

  default_hint = "The narration service rejected the request. Check the configured API key."


class ArtifactFetchError(RuntimeError):
  """One artifact could not be downloaded or was empty."""

  def __init__(self, message: str, *, locator: str) -> None:
    super().__init__(message)
    self.locator = locator


class ArchiveError(RuntimeError):
  """Bundle creation failed after the items were fetched."""


class ArchiveEmptyError(RuntimeError):
  """Every requested item failed, so there is nothing to deliver."""


class VoiceNotSelectedError(ValueError):
  """Narration was requested before a voice was chosen."""
