from __future__ import annotations

import asyncio

import pytest

from bookforge.generation.contracts import AudioRequest, AudioResponse
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import AudioNetworkError, AudioTimeoutError, ServiceReportedError, VoiceNotSelectedError
from bookforge.jobs.models import AudioChapterState
from bookforge.orchestrators.audio import AudioJobOrchestrator, ChapterMode, FullBookMode
from bookforge.storage.preferences_repo import AudioPreferences, InMemoryPreferencesRepository


def _chapter_response(number: int, url: str | None = None) -> AudioResponse:
  return AudioResponse.model_validate({"success": True, "type": "chapters", "chapters": [{"chapterNumber": number, "audioUrl": url or f"https://cdn.test/ch{number}.mp3", "duration": 60.0 * number}]})


class FakeAudioService:
  """Narration double that records requested chapters and fails on demand."""

  def __init__(self, *, failures: dict[int, Exception] | None = None, block_on: int | None = None) -> None:
    self.failures = failures or {}
    self.block_on = block_on
    self.requested: list[list[int] | None] = []
    self.requests: list[AudioRequest] = []
    self.entered_block = asyncio.Event()

  async def generate_audio(self, request: AudioRequest) -> AudioResponse:
    self.requests.append(request)
    self.requested.append(request.chapter_numbers)
    if request.chapter_numbers is None:
      return AudioResponse.model_validate({"success": True, "type": "full", "audioUrl": "https://cdn.test/book.mp3", "duration": 3600})
    number = request.chapter_numbers[0]
    if number in self.failures:
      raise self.failures[number]
    if number == self.block_on:
      self.entered_block.set()
      await asyncio.Event().wait()
    return _chapter_response(number)


def _orchestrator(service: FakeAudioService, chapters: list[AudioChapterState], **kwargs: object) -> AudioJobOrchestrator:
  repo = kwargs.pop("preferences_repo", None) or InMemoryPreferencesRepository()
  repo.save("book-1", AudioPreferences(voice="nova"))
  return AudioJobOrchestrator(service, book_id="book-1", user_id="user-1", chapters=chapters, preferences_repo=repo, **kwargs)


@pytest.mark.anyio
async def test_chapters_are_requested_in_ascending_order(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService()
  orchestrator = _orchestrator(service, chapters)

  result = await orchestrator.run(ChapterMode({3, 1, 2}))

  assert service.requested == [[1], [2], [3]]
  assert [state.chapter_number for state in result.completed] == [1, 2, 3]
  assert orchestrator.missing_chapters() == []
  assert not result.cancelled


@pytest.mark.anyio
async def test_failure_keeps_earlier_chapters_and_skips_later_ones(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService(failures={2: ServiceReportedError("OpenAI API key not configured")})
  orchestrator = _orchestrator(service, chapters)

  with pytest.raises(ServiceReportedError) as excinfo:
    await orchestrator.run(ChapterMode([3, 1, 2]))

  assert service.requested == [[1], [2]]
  assert excinfo.value.chapter_number == 2
  assert [state.chapter_number for state in excinfo.value.completed] == [1]
  assert orchestrator.chapters[0].status == "ready"
  assert orchestrator.missing_chapters() == [2, 3]


@pytest.mark.anyio
async def test_timeout_is_distinguished_from_network_and_service_errors(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService(block_on=1)
  orchestrator = _orchestrator(service, chapters, request_timeout_seconds=0.01)

  with pytest.raises(AudioTimeoutError) as timeout:
    await orchestrator.run(ChapterMode([1]))

  network = AudioNetworkError("connection reset")
  reported = ServiceReportedError("bad key")
  hints = {timeout.value.hint, network.hint, reported.hint}
  assert len(hints) == 3
  assert "Reduce the number of chapters" in timeout.value.hint
  assert "connectivity" in network.hint
  assert "API key" in reported.hint


@pytest.mark.anyio
async def test_service_hint_overrides_default_remediation() -> None:
  error = ServiceReportedError("Blob storage not configured", hint="Set BLOB_READ_WRITE_TOKEN")
  assert error.hint == "Set BLOB_READ_WRITE_TOKEN"


@pytest.mark.anyio
async def test_cancel_aborts_in_flight_request_and_reports_partial_success(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService(block_on=2)
  orchestrator = _orchestrator(service, chapters)
  token = CancellationToken()

  run = asyncio.ensure_future(orchestrator.run(ChapterMode([1, 2, 3]), token=token))
  await service.entered_block.wait()
  token.cancel()
  result = await run

  assert result.cancelled
  assert result.partial
  assert [state.chapter_number for state in result.completed] == [1]
  assert service.requested == [[1], [2]]
  assert orchestrator.missing_chapters() == [2, 3]


@pytest.mark.anyio
async def test_regenerating_a_chapter_overwrites_it_in_place() -> None:
  chapters = [AudioChapterState(chapter_number=1, title="One", audio_locator="https://cdn.test/old.mp3", duration_seconds=10.0)]
  orchestrator = _orchestrator(FakeAudioService(), chapters)

  await orchestrator.run(ChapterMode([1]))

  assert len(orchestrator.chapters) == 1
  assert orchestrator.chapters[0].audio_locator == "https://cdn.test/ch1.mp3"
  assert orchestrator.chapters[0].duration_seconds == 60.0


@pytest.mark.anyio
async def test_full_book_mode_issues_one_request(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService()
  orchestrator = _orchestrator(service, chapters)

  result = await orchestrator.run(FullBookMode())

  assert service.requested == [None]
  assert result.full_book is not None
  assert result.full_book.audio_locator == "https://cdn.test/book.mp3"
  assert orchestrator.full_book == result.full_book


@pytest.mark.anyio
async def test_voice_is_required_before_any_request(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService()
  orchestrator = AudioJobOrchestrator(service, book_id="book-2", user_id="user-1", chapters=chapters)

  with pytest.raises(VoiceNotSelectedError):
    await orchestrator.run(ChapterMode([1]))

  assert service.requested == []


def test_preferences_are_loaded_once_and_saved_on_every_change(chapters: list[AudioChapterState]) -> None:
  repo = InMemoryPreferencesRepository()
  repo.save("book-1", AudioPreferences(voice="onyx", speed=1.25))
  orchestrator = AudioJobOrchestrator(FakeAudioService(), book_id="book-1", user_id="user-1", chapters=chapters, preferences_repo=repo)
  assert orchestrator.preferences.voice == "onyx"

  orchestrator.update_preferences(quality="hd")
  orchestrator.update_preferences(voice="shimmer")

  assert repo.save_count == 3
  stored = repo.load("book-1")
  assert stored == AudioPreferences(voice="shimmer", speed=1.25, quality="hd")
  assert stored.model == "tts-1-hd"


@pytest.mark.anyio
async def test_requests_carry_voice_parameters(chapters: list[AudioChapterState]) -> None:
  service = FakeAudioService()
  orchestrator = _orchestrator(service, chapters)

  await orchestrator.run(ChapterMode([2]), AudioPreferences(provider="openai", voice="echo", speed=0.9, quality="hd"))

  wire = service.requests[0].to_wire()
  assert wire == {"userId": "user-1", "bookId": "book-1", "provider": "openai", "voice": "echo", "speed": 0.9, "model": "tts-1-hd", "chapterNumbers": [2]}


@pytest.mark.anyio
async def test_select_missing_narrates_only_chapters_without_audio() -> None:
  chapters = [AudioChapterState(chapter_number=1, audio_locator="https://cdn.test/1.mp3"), AudioChapterState(chapter_number=2), AudioChapterState(chapter_number=3)]
  service = FakeAudioService()
  orchestrator = _orchestrator(service, chapters)

  await orchestrator.run(ChapterMode(orchestrator.missing_chapters()))

  assert service.requested == [[2], [3]]
