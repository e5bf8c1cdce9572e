from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from bookforge.generation.contracts import TTSProvider
from bookforge.jobs.models import AudioChapterState, GenerationJob, JobPhase, ResumeToken, RunStatus
from bookforge.orchestrators.audio import AudioRunResult
from bookforge.services.archive import ArchiveResult
from bookforge.services.runs import RunHandle
from bookforge.storage.preferences_repo import VoiceQuality


class ApiModel(BaseModel):
  """Base for request and response bodies using camelCase field names."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class GenerationRunRequest(ApiModel):
  """Request to start generating, or continue, a book."""

  outline: dict[str, Any] = Field(description="Book outline forwarded to the generation service.")
  config: dict[str, Any] = Field(default_factory=dict, description="Generation configuration forwarded as-is.")
  model_id: str = Field(min_length=1, description="Model used for chapter generation.")
  generation_speed: str | None = Field(default=None, description="Optional speed profile understood by the service.")
  use_parallel: bool = Field(default=False, description="Generate chapters of a batch in parallel.")
  mode: Literal["batch", "stream"] = Field(default="batch", description="Transport used to drive the run.")
  book_id: str | None = Field(default=None, description="Existing book to resume.")

  @field_validator("book_id", mode="before")
  @classmethod
  def normalize_book_id(cls, value: Any) -> str | None:
    if value is None or value == 0 or value == "" or value == "0":
      return None
    return str(value)


class RunCreatedResponse(ApiModel):
  """Identifier of a run accepted for background execution."""

  run_id: str
  kind: Literal["text", "audio"]
  mode: str
  status: RunStatus


class JobSnapshot(ApiModel):
  phase: JobPhase
  book_id: str | None
  chapters_completed: int
  total_chapters: int
  progress: float
  message: str
  current_batch: list[int]
  is_parallel: bool | None
  model_used: str | None
  total_words: int | None
  batch_duration: float | None

  @classmethod
  def from_job(cls, job: GenerationJob) -> JobSnapshot:
    return cls(
      phase=job.phase,
      book_id=job.book_id,
      chapters_completed=job.chapters_completed,
      total_chapters=job.total_chapters,
      progress=job.progress,
      message=job.message,
      current_batch=sorted(job.current_batch),
      is_parallel=job.is_parallel,
      model_used=job.model_used,
      total_words=job.total_words,
      batch_duration=job.batch_duration,
    )


class ResumeTokenModel(ApiModel):
  book_id: str
  chapters_completed: int
  total_chapters: int
  progress: float

  @classmethod
  def from_token(cls, token: ResumeToken | None) -> ResumeTokenModel | None:
    if token is None:
      return None
    return cls(book_id=token.book_id, chapters_completed=token.chapters_completed, total_chapters=token.total_chapters, progress=token.progress)


class GenerationRunResponse(ApiModel):
  """Current view of a text generation run."""

  run_id: str
  mode: str
  status: RunStatus
  job: JobSnapshot | None = None
  error: str | None = None
  resume_token: ResumeTokenModel | None = None

  @classmethod
  def from_handle(cls, handle: RunHandle) -> GenerationRunResponse:
    return cls(
      run_id=handle.run_id,
      mode=handle.mode,
      status=handle.status,
      job=JobSnapshot.from_job(handle.job) if handle.job is not None else None,
      error=handle.error,
      resume_token=ResumeTokenModel.from_token(handle.resume_token),
    )


class AudioChapterInput(ApiModel):
  """A chapter known to the caller, with its current narration if any."""

  chapter_number: int = Field(ge=1)
  title: str = ""
  audio_url: str | None = None
  duration: float | None = None

  def to_state(self) -> AudioChapterState:
    return AudioChapterState(chapter_number=self.chapter_number, title=self.title, audio_locator=self.audio_url, duration_seconds=self.duration)


class AudioRunRequest(ApiModel):
  """Request to narrate a book in full or chapter by chapter."""

  book_id: str = Field(min_length=1)
  user_id: str = Field(min_length=1)
  chapters: list[AudioChapterInput] = Field(min_length=1)
  mode: Literal["full", "chapters"] = "chapters"
  chapter_numbers: list[int] | None = Field(default=None, description="Chapters to narrate in chapter mode.")
  select_missing: bool = Field(default=False, description="Narrate every chapter without audio instead of chapter_numbers.")
  provider: TTSProvider | None = None
  voice: str | None = None
  speed: float | None = Field(default=None, gt=0, le=4)
  quality: VoiceQuality | None = None


class AudioChapterModel(ApiModel):
  chapter_number: int
  title: str
  audio_url: str | None
  duration: float | None
  status: Literal["ready", "missing"]

  @classmethod
  def from_state(cls, state: AudioChapterState) -> AudioChapterModel:
    return cls(chapter_number=state.chapter_number, title=state.title, audio_url=state.audio_locator, duration=state.duration_seconds, status=state.status)


class AudioRunResponse(ApiModel):
  """Current view of a narration run."""

  run_id: str
  mode: str
  status: RunStatus
  message: str = ""
  current_chapter: int | None = None
  requested: list[int] = Field(default_factory=list)
  completed: list[AudioChapterModel] = Field(default_factory=list)
  full_audio_url: str | None = None
  partial: bool = False
  error: str | None = None
  hint: str | None = None

  @classmethod
  def from_handle(cls, handle: RunHandle) -> AudioRunResponse:
    result: AudioRunResult | None = handle.audio
    if result is None:
      return cls(run_id=handle.run_id, mode=handle.mode, status=handle.status, error=handle.error, hint=handle.hint)
    return cls(
      run_id=handle.run_id,
      mode=handle.mode,
      status=handle.status,
      message=result.message,
      current_chapter=result.current_chapter,
      requested=result.requested,
      completed=[AudioChapterModel.from_state(state) for state in result.completed],
      full_audio_url=result.full_book.audio_locator if result.full_book is not None else None,
      partial=result.partial,
      error=handle.error,
      hint=handle.hint,
    )


class ArchiveItemInput(ApiModel):
  audio_url: str = Field(min_length=1)
  title: str = ""
  chapter_number: int | None = Field(default=None, ge=0)


class ArchiveRequest(ApiModel):
  """Request to download narrated chapters as one file or bundle."""

  book_title: str = Field(min_length=1)
  items: list[ArchiveItemInput] = Field(min_length=1)


class ArchiveTransferModel(ApiModel):
  filename: str
  audio_url: str


class ArchiveManifestResponse(ApiModel):
  """Individual downloads returned when the bundle could not be built."""

  kind: Literal["individual"] = "individual"
  transfers: list[ArchiveTransferModel]
  omitted: list[str] = Field(default_factory=list)

  @classmethod
  def from_result(cls, result: ArchiveResult) -> ArchiveManifestResponse:
    return cls(transfers=[ArchiveTransferModel(filename=transfer.filename, audio_url=transfer.locator) for transfer in result.transfers], omitted=[omission.item.locator for omission in result.omitted])
