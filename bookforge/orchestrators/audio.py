"""Sequential narration pipeline for one book."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from bookforge.generation.client import GenerationService
from bookforge.generation.contracts import AudioRequest, AudioResponse
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import AudioGenerationError, AudioTimeoutError, JobCanceledError, ServiceReportedError, VoiceNotSelectedError
from bookforge.jobs.models import AudioChapterState, FullBookAudio
from bookforge.storage.preferences_repo import AudioPreferences, PreferencesRepository

logger = logging.getLogger(__name__)

# Narration synthesis is slow; each request gets twelve minutes.
DEFAULT_AUDIO_TIMEOUT_SECONDS = 720.0


@dataclass(frozen=True)
class FullBookMode:
  """Narrate the whole book as one artifact."""


@dataclass(frozen=True)
class ChapterMode:
  """Narrate the selected chapters one request at a time."""

  chapter_numbers: frozenset[int]

  def __init__(self, chapter_numbers: Iterable[int]) -> None:
    object.__setattr__(self, "chapter_numbers", frozenset(int(number) for number in chapter_numbers))


AudioMode = FullBookMode | ChapterMode


@dataclass
class AudioRunResult:
  """Outcome of one narration run; cancelled runs keep whatever completed."""

  mode: str
  requested: list[int] = field(default_factory=list)
  completed: list[AudioChapterState] = field(default_factory=list)
  full_book: FullBookAudio | None = None
  current_chapter: int | None = None
  message: str = ""
  cancelled: bool = False

  @property
  def partial(self) -> bool:
    """Return True when a cancelled run still produced artifacts."""
    return self.cancelled and bool(self.completed)


AudioProgressCallback = Callable[[AudioRunResult], Awaitable[None] | None]


class AudioJobOrchestrator:
  """Drive narration for one book's chapters, strictly one request at a time.

  Chapter state is owned here and updated in place by chapter number, so
  regenerating a chapter simply overwrites its previous artifact. Preferences are
  read once at construction and written back on every change.
  """

  def __init__(
    self,
    service: GenerationService,
    *,
    book_id: str,
    user_id: str,
    chapters: Iterable[AudioChapterState],
    preferences_repo: PreferencesRepository | None = None,
    request_timeout_seconds: float = DEFAULT_AUDIO_TIMEOUT_SECONDS,
  ) -> None:
    self.service = service
    self.book_id = book_id
    self.user_id = user_id
    self.preferences_repo = preferences_repo
    self.request_timeout_seconds = request_timeout_seconds
    self._chapters: dict[int, AudioChapterState] = {chapter.chapter_number: replace(chapter) for chapter in chapters}
    self._full_book: FullBookAudio | None = None

    stored = preferences_repo.load(book_id) if preferences_repo is not None else None
    self.preferences = stored or AudioPreferences()

  @property
  def chapters(self) -> list[AudioChapterState]:
    """Return chapter states ordered by chapter number."""
    return [self._chapters[number] for number in sorted(self._chapters)]

  @property
  def full_book(self) -> FullBookAudio | None:
    return self._full_book

  def missing_chapters(self) -> list[int]:
    """Return chapters that have no narration yet, in ascending order."""
    return [chapter.chapter_number for chapter in self.chapters if chapter.status == "missing"]

  def update_preferences(self, **changes: Any) -> AudioPreferences:
    """Apply preference changes and persist them immediately."""
    self.preferences = self.preferences.merged(**changes)
    if self.preferences_repo is not None:
      self.preferences_repo.save(self.book_id, self.preferences)
    return self.preferences

  async def run(self, mode: AudioMode, voice_params: AudioPreferences | None = None, *, token: CancellationToken | None = None, progress_callback: AudioProgressCallback | None = None) -> AudioRunResult:
    """Narrate according to ``mode``.

    Raises an AudioGenerationError subclass on the first failed request; chapters
    completed before it stay recorded and are listed on the error. Cancellation
    returns normally with ``cancelled`` set.
    """

    params = voice_params or self.preferences
    if not params.voice:
      raise VoiceNotSelectedError("Select a voice before generating audio.")

    token = token or CancellationToken()
    if isinstance(mode, FullBookMode):
      return await self._run_full_book(params, token, progress_callback)
    return await self._run_chapters(mode, params, token, progress_callback)

  async def _run_full_book(self, params: AudioPreferences, token: CancellationToken, progress_callback: AudioProgressCallback | None) -> AudioRunResult:
    result = AudioRunResult(mode="full", message="Generating full audiobook...")
    await self._notify(progress_callback, result)
    logger.info("Starting full-book narration book_id=%s voice=%s", self.book_id, params.voice)

    try:
      response = await token.run(self._request, self._build_request(params, None), None)
    except JobCanceledError:
      return await self._cancelled(result, progress_callback)

    if not response.audio_url:
      raise ServiceReportedError("The narration service returned no audio.", book_id=self.book_id)

    self._full_book = FullBookAudio(audio_locator=response.audio_url, duration_seconds=response.duration)
    result.full_book = self._full_book
    result.message = "Full audiobook generated successfully!"
    await self._notify(progress_callback, result)
    return result

  async def _run_chapters(self, mode: ChapterMode, params: AudioPreferences, token: CancellationToken, progress_callback: AudioProgressCallback | None) -> AudioRunResult:
    # Ascending order regardless of how the chapters were selected.
    ordered = sorted(mode.chapter_numbers)
    unknown = [number for number in ordered if number not in self._chapters]
    if unknown:
      raise ValueError(f"Unknown chapters for book {self.book_id}: {unknown}")

    result = AudioRunResult(mode="chapters", requested=ordered)
    logger.info("Starting chapter narration book_id=%s chapters=%s voice=%s", self.book_id, ordered, params.voice)

    for index, number in enumerate(ordered, start=1):
      if token.cancelled:
        return await self._cancelled(result, progress_callback)

      result.current_chapter = number
      result.message = f"Generating chapter {number} ({index}/{len(ordered)})..."
      await self._notify(progress_callback, result)

      try:
        response = await token.run(self._request, self._build_request(params, [number]), number)
      except JobCanceledError:
        return await self._cancelled(result, progress_callback)
      except AudioGenerationError as exc:
        # Later chapters are never attempted; earlier ones stay recorded.
        exc.completed = list(result.completed)
        exc.chapter_number = exc.chapter_number or number
        logger.error("Narration failed book_id=%s chapter=%s completed=%s: %s", self.book_id, number, len(result.completed), exc.message)
        raise

      result.completed.append(self._record_chapter(number, response, result))

    result.current_chapter = None
    count = len(result.completed)
    result.message = f"Successfully generated {count} chapter{'s' if count != 1 else ''}!"
    await self._notify(progress_callback, result)
    return result

  def _record_chapter(self, number: int, response: AudioResponse, result: AudioRunResult) -> AudioChapterState:
    """Overwrite the chapter's artifact in place with the service result."""
    returned = next((item for item in response.chapters if item.chapter_number == number), None)
    if returned is None:
      raise ServiceReportedError(f"No audio returned for chapter {number}.", chapter_number=number, book_id=self.book_id, completed=result.completed)

    state = self._chapters[number]
    state.audio_locator = returned.audio_url
    state.duration_seconds = returned.duration
    return replace(state)

  def _build_request(self, params: AudioPreferences, chapter_numbers: list[int] | None) -> AudioRequest:
    return AudioRequest(user_id=self.user_id, book_id=self.book_id, provider=params.provider, voice=params.voice, speed=params.speed, model=params.model, chapter_numbers=chapter_numbers)

  async def _request(self, request: AudioRequest, chapter_number: int | None) -> AudioResponse:
    """Issue one narration request under the per-request deadline."""
    try:
      async with asyncio.timeout(self.request_timeout_seconds):
        return await self.service.generate_audio(request)
    except TimeoutError as exc:
      raise AudioTimeoutError("Audio generation timed out.", chapter_number=chapter_number, book_id=self.book_id) from exc

  async def _cancelled(self, result: AudioRunResult, progress_callback: AudioProgressCallback | None) -> AudioRunResult:
    result.cancelled = True
    result.current_chapter = None
    result.message = f"Narration cancelled after {len(result.completed)} chapter(s)."
    logger.info("Narration cancelled book_id=%s completed=%s", self.book_id, [chapter.chapter_number for chapter in result.completed])
    await self._notify(progress_callback, result)
    return result

  @staticmethod
  async def _notify(callback: AudioProgressCallback | None, result: AudioRunResult) -> None:
    if callback is None:
      return
    outcome = callback(replace(result, requested=list(result.requested), completed=list(result.completed)))
    if inspect.isawaitable(outcome):
      await outcome
