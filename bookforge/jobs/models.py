"""Domain models for book generation and narration runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

JobPhase = Literal["idle", "creating", "generating", "cover", "completed", "error"]
RunStatus = Literal["running", "completed", "cancelled", "error"]
AudioStatus = Literal["ready", "missing"]

# Forward order of the non-error phases; error may interrupt any of them.
PHASE_ORDER: dict[str, int] = {"idle": 0, "creating": 1, "generating": 2, "cover": 3, "completed": 4}
TERMINAL_PHASES = frozenset({"completed", "error"})


@dataclass(frozen=True)
class ResumeToken:
  """Minimal state a caller needs to continue an interrupted book."""

  book_id: str
  chapters_completed: int
  total_chapters: int
  progress: float


@dataclass
class GenerationJob:
  """Client-visible progress of one book generation run."""

  phase: JobPhase = "idle"
  book_id: str | None = None
  chapters_completed: int = 0
  total_chapters: int = 0
  progress: float = 0.0
  message: str = ""
  current_batch: frozenset[int] = field(default_factory=frozenset)
  is_parallel: bool | None = None
  model_used: str | None = None
  total_words: int | None = None
  batch_duration: float | None = None
  cancelled: bool = False

  @property
  def is_terminal(self) -> bool:
    """Return True once the job reached completed or error."""
    return self.phase in TERMINAL_PHASES

  @property
  def status(self) -> RunStatus:
    """Collapse phase and cancellation into a caller-facing run status."""
    if self.phase == "completed":
      return "completed"
    if self.phase == "error":
      return "error"
    if self.cancelled:
      return "cancelled"
    return "running"

  def resume_token(self) -> ResumeToken | None:
    """Return a resume token when the service already assigned a book id."""
    if self.book_id is None:
      return None
    return ResumeToken(book_id=self.book_id, chapters_completed=self.chapters_completed, total_chapters=self.total_chapters, progress=self.progress)


@dataclass(frozen=True)
class JobUpdate:
  """Partial update merged into a GenerationJob; None means "not reported"."""

  phase: JobPhase | None = None
  book_id: str | None = None
  chapters_completed: int | None = None
  total_chapters: int | None = None
  progress: float | None = None
  message: str | None = None
  current_batch: frozenset[int] | None = None
  is_parallel: bool | None = None
  model_used: str | None = None
  total_words: int | None = None
  batch_duration: float | None = None


@dataclass
class AudioChapterState:
  """Narration state for a single chapter, keyed by chapter number."""

  chapter_number: int
  title: str = ""
  audio_locator: str | None = None
  duration_seconds: float | None = None

  @property
  def status(self) -> AudioStatus:
    """Derive readiness from the presence of an artifact."""
    return "ready" if self.audio_locator else "missing"


@dataclass(frozen=True)
class FullBookAudio:
  """Single concatenated narration artifact for the whole book."""

  audio_locator: str
  duration_seconds: float | None = None
