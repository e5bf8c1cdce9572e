"""Decoding of the generation service's newline-delimited event stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import msgspec

from bookforge.jobs.errors import StreamParseError

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data:"
EVENT_PREFIX = b"event:"
COMMENT_PREFIX = b":"
COVER_TYPES = frozenset({"front", "back"})


@dataclass(frozen=True)
class StreamEvent:
  """Base for decoded stream records; ``book_id`` is captured from any record."""

  book_id: str | None
  message: str | None
  event_name: str | None


@dataclass(frozen=True)
class StartEvent(StreamEvent):
  parallel: bool | None = None
  model: str | None = None
  total_chapters: int | None = None


@dataclass(frozen=True)
class BookCreatedEvent(StreamEvent):
  pass


@dataclass(frozen=True)
class BatchEvent(StreamEvent):
  batch: int | None = None
  chapters: frozenset[int] | None = None
  chapters_completed: int | None = None
  total_chapters: int | None = None
  progress: float | None = None
  total_words: int | None = None
  batch_duration: float | None = None
  error: str | None = None


@dataclass(frozen=True)
class ChapterProgressEvent(StreamEvent):
  chapter_number: int = 0


@dataclass(frozen=True)
class CoverEvent(StreamEvent):
  cover_type: str = "front"
  error: str | None = None


@dataclass(frozen=True)
class CompleteEvent(StreamEvent):
  chapters_completed: int = 0
  total_words: int = 0


@dataclass(frozen=True)
class ErrorEvent(StreamEvent):
  error: str = ""


@dataclass(frozen=True)
class UnknownEvent(StreamEvent):
  payload: dict[str, Any] = field(default_factory=dict)


def _optional_int(value: Any) -> int | None:
  if value is None or isinstance(value, bool):
    return None
  try:
    return int(value)
  except (TypeError, ValueError):
    return None


def _optional_float(value: Any) -> float | None:
  if value is None or isinstance(value, bool):
    return None
  try:
    return float(value)
  except (TypeError, ValueError):
    return None


def _optional_str(value: Any) -> str | None:
  if value is None:
    return None
  return str(value)


def _book_id(payload: dict[str, Any]) -> str | None:
  value = payload.get("bookId")
  if value is None or value == 0 or value == "":
    return None
  return str(value)


def classify(payload: dict[str, Any], *, event_name: str | None = None) -> StreamEvent:
  """Map a decoded record to its event variant by the fields it carries.

  The service sends no explicit kind tag, so the first matching rule wins:
  ``phase == "starting"``, ``batch``, ``chapterNumber``, ``type`` in front/back,
  ``chaptersCompleted`` with ``totalWords``, ``error``, ``bookId``.
  """

  base = {"book_id": _book_id(payload), "message": _optional_str(payload.get("message")), "event_name": event_name}

  if payload.get("phase") == "starting":
    parallel = payload.get("parallel")
    return StartEvent(**base, parallel=bool(parallel) if parallel is not None else None, model=_optional_str(payload.get("model")), total_chapters=_optional_int(payload.get("totalChapters")))

  if "batch" in payload:
    chapters = payload.get("chapters")
    chapter_set = frozenset(int(number) for number in chapters) if isinstance(chapters, list) else None
    return BatchEvent(
      **base,
      batch=_optional_int(payload.get("batch")),
      chapters=chapter_set,
      chapters_completed=_optional_int(payload.get("chaptersCompleted")),
      total_chapters=_optional_int(payload.get("totalChapters")),
      progress=_optional_float(payload.get("progress")),
      total_words=_optional_int(payload.get("totalWords")),
      batch_duration=_optional_float(payload.get("batchDuration")),
      error=_optional_str(payload.get("error")),
    )

  if "chapterNumber" in payload:
    return ChapterProgressEvent(**base, chapter_number=_optional_int(payload.get("chapterNumber")) or 0)

  if payload.get("type") in COVER_TYPES:
    return CoverEvent(**base, cover_type=str(payload["type"]), error=_optional_str(payload.get("error")))

  if "chaptersCompleted" in payload and "totalWords" in payload:
    return CompleteEvent(**base, chapters_completed=_optional_int(payload.get("chaptersCompleted")) or 0, total_words=_optional_int(payload.get("totalWords")) or 0)

  if "error" in payload:
    return ErrorEvent(**base, error=str(payload.get("error") or "Generation failed"))

  if base["book_id"] is not None:
    return BookCreatedEvent(**base)

  return UnknownEvent(**base, payload=payload)


def decode_payload(raw: bytes) -> dict[str, Any]:
  """Decode one ``data:`` payload, raising StreamParseError when incomplete or invalid."""
  try:
    payload = msgspec.json.decode(raw)
  except msgspec.DecodeError as exc:
    raise StreamParseError(f"Undecodable stream record: {exc}") from exc

  if not isinstance(payload, dict):
    raise StreamParseError("Stream record is not a JSON object.")

  return payload


class StreamDecoder:
  """Incremental line framer for the event stream.

  Chunks may split lines, and multi-byte characters, anywhere. The trailing
  partial line is kept and prefixed onto the next chunk, so feeding a payload
  in any number of pieces yields the same events as feeding it whole.
  """

  def __init__(self) -> None:
    self._buffer = b""
    self._event_name: str | None = None
    self.dropped_records = 0

  def feed(self, chunk: bytes) -> list[StreamEvent]:
    """Consume a chunk and return the events completed by it, in arrival order."""

    self._buffer += chunk
    *lines, self._buffer = self._buffer.split(b"\n")
    events: list[StreamEvent] = []
    for line in lines:
      event = self._parse_line(line)
      if event is not None:
        events.append(event)
    return events

  def flush(self) -> list[StreamEvent]:
    """Parse whatever remains once the stream has ended."""

    remainder, self._buffer = self._buffer, b""
    if not remainder.strip():
      return []
    event = self._parse_line(remainder)
    return [event] if event is not None else []

  def _parse_line(self, raw_line: bytes) -> StreamEvent | None:
    line = raw_line.rstrip(b"\r")

    # Blank separators and heartbeat comments carry no state.
    if not line.strip() or line.startswith(COMMENT_PREFIX):
      return None

    if line.startswith(EVENT_PREFIX):
      self._event_name = line[len(EVENT_PREFIX) :].strip().decode("utf-8", errors="replace") or None
      return None

    if not line.startswith(DATA_PREFIX):
      return None

    try:
      payload = decode_payload(line[len(DATA_PREFIX) :].strip())
    except StreamParseError as exc:
      # Incomplete or garbled records are expected on this transport; drop them.
      self.dropped_records += 1
      logger.debug("Dropping stream record after event=%s: %s", self._event_name, exc)
      return None

    event = classify(payload, event_name=self._event_name)
    self._event_name = None
    return event
