"""Wire contracts for the external generation service."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from bookforge.jobs.models import JobPhase

TTSProvider = Literal["openai", "gemini"]
TTSModel = Literal["tts-1", "tts-1-hd"]


def _coerce_book_id(value: Any) -> str | None:
  """Normalize service book ids; the service reports a missing id as 0 or empty."""
  if value is None or value == 0 or value == "" or value == "0":
    return None
  return str(value)


class ServiceModel(BaseModel):
  """Base model using the service's camelCase field names."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

  def to_wire(self) -> dict[str, Any]:
    """Serialize with camelCase keys, omitting unset optional fields."""
    return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ModelOptions(ServiceModel):
  """Model selection for a text generation run."""

  model_id: str = Field(min_length=1)
  generation_speed: str | None = None
  use_parallel: bool = False


class StreamRequest(ServiceModel):
  """Request body for the streamed generation endpoint."""

  outline: dict[str, Any]
  config: dict[str, Any]
  model_id: str
  generation_speed: str | None = None
  use_parallel: bool = False
  book_id: str | None = None

  @field_validator("book_id", mode="before")
  @classmethod
  def normalize_book_id(cls, value: Any) -> str | None:
    return _coerce_book_id(value)

  @field_serializer("book_id")
  def serialize_book_id(self, value: str | None) -> int | str | None:
    # The generation endpoints key books by numeric id.
    if value is not None and value.isdigit():
      return int(value)
    return value


class AdvanceRequest(StreamRequest):
  """Request body for one batch "advance" call; book_id is omitted until assigned."""


class AdvanceResponse(ServiceModel):
  """Response of one batch "advance" call."""

  success: bool
  phase: JobPhase | None = None
  book_id: str | None = None
  chapters_completed: int | None = None
  total_chapters: int | None = None
  progress: float | None = None
  message: str | None = None
  error: str | None = None
  details: str | None = None

  @field_validator("book_id", mode="before")
  @classmethod
  def normalize_book_id(cls, value: Any) -> str | None:
    return _coerce_book_id(value)

  @property
  def failure_message(self) -> str:
    """Return the most specific failure text the service provided."""
    return self.details or self.error or self.message or "Generation failed"


class AudioRequest(ServiceModel):
  """Request body for the narration endpoint; no chapter_numbers means full book."""

  user_id: str
  book_id: str
  provider: TTSProvider = "openai"
  voice: str
  speed: float = Field(default=1.0, gt=0)
  model: TTSModel = "tts-1"
  chapter_numbers: list[int] | None = None


class AudioChapterResult(ServiceModel):
  """One narrated chapter returned by the service."""

  chapter_number: int
  audio_url: str
  duration: float | None = None


class AudioResponse(ServiceModel):
  """Response of the narration endpoint."""

  success: bool = False
  type: Literal["full", "chapters"] | None = None
  audio_url: str | None = None
  duration: float | None = None
  chapters: list[AudioChapterResult] = Field(default_factory=list)
  error: str | None = None
  details: str | None = None
  hint: str | None = None

  @property
  def failure_message(self) -> str:
    """Return the most specific failure text the service provided."""
    return self.error or self.details or "Failed to generate audio"
