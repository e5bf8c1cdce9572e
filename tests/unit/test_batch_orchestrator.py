from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from bookforge.generation.contracts import AdvanceResponse, ModelOptions
from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import FatalServiceError, TransientServiceError
from bookforge.orchestrators.batch import BatchOrchestrator
from bookforge.storage.book_cache import InMemoryBookCache

OUTLINE = {"title": "Test Book", "chapters": [{"number": n} for n in range(1, 11)]}
OPTIONS = ModelOptions(model_id="gpt-4o-mini")


def _response(**fields: object) -> AdvanceResponse:
  return AdvanceResponse.model_validate({"success": True, **fields})


@pytest.fixture
def delays(monkeypatch: pytest.MonkeyPatch) -> list[float]:
  recorded: list[float] = []

  async def _fake_sleep(delay: float) -> None:
    recorded.append(delay)

  monkeypatch.setattr("bookforge.orchestrators.batch.asyncio.sleep", _fake_sleep)
  return recorded


class FakeService:
  """Generation service double recording advance requests."""

  def __init__(self, *outcomes: object) -> None:
    self.advance = AsyncMock(side_effect=list(outcomes))

  def sent_book_ids(self) -> list[str | None]:
    return [call.args[0].book_id for call in self.advance.await_args_list]


@pytest.mark.anyio
async def test_end_to_end_ten_chapters_finalizes_once(delays: list[float]) -> None:
  service = FakeService(
    _response(phase="generating", bookId=17, chaptersCompleted=4, totalChapters=10, progress=40, message="4 of 10"),
    _response(phase="generating", bookId=17, chaptersCompleted=8, totalChapters=10, progress=80, message="8 of 10"),
    _response(phase="completed", bookId=17, chaptersCompleted=10, totalChapters=10, progress=100, message="Done"),
  )
  cache = InMemoryBookCache()
  on_completed = AsyncMock()
  orchestrator = BatchOrchestrator(service, book_cache=cache, on_completed=on_completed)

  job = await orchestrator.run(OUTLINE, {}, OPTIONS)

  assert job.phase == "completed"
  assert job.chapters_completed == 10
  assert job.total_chapters == 10
  assert job.progress == 100
  assert job.book_id == "17"
  on_completed.assert_awaited_once()
  assert list(cache.invalidated) == ["17"]
  # The id is omitted until the service assigns it, then sent on every call.
  assert service.sent_book_ids() == [None, "17", "17"]
  assert delays == [0.5, 0.5]


@pytest.mark.anyio
async def test_two_transient_failures_then_success_completes(delays: list[float]) -> None:
  messages: list[str] = []
  service = FakeService(
    TransientServiceError("rate limited"),
    TransientServiceError("rate limited"),
    _response(phase="completed", bookId="b1", chaptersCompleted=3, totalChapters=3, progress=100),
  )
  orchestrator = BatchOrchestrator(service)

  job = await orchestrator.run(OUTLINE, {}, OPTIONS, progress_callback=lambda snapshot: messages.append(snapshot.message))

  assert job.status == "completed"
  assert orchestrator.retry_state.consecutive_error_count == 0
  assert "Retrying... (1/3)" in messages
  assert "Retrying... (2/3)" in messages
  assert delays == [2.0, 2.0]
  assert service.sent_book_ids() == [None, None, None]


@pytest.mark.anyio
async def test_error_count_resets_after_each_success(delays: list[float]) -> None:
  service = FakeService(
    TransientServiceError("blip"),
    TransientServiceError("blip"),
    _response(phase="generating", bookId="b1", chaptersCompleted=2, totalChapters=6, progress=33),
    TransientServiceError("blip"),
    TransientServiceError("blip"),
    _response(phase="completed", bookId="b1", chaptersCompleted=6, totalChapters=6, progress=100),
  )
  orchestrator = BatchOrchestrator(service)

  job = await orchestrator.run(OUTLINE, {}, OPTIONS)

  assert job.status == "completed"
  assert service.sent_book_ids() == [None, None, None, "b1", "b1", "b1"]


@pytest.mark.anyio
async def test_three_consecutive_failures_escalate_with_last_book_id(delays: list[float]) -> None:
  service = FakeService(
    _response(phase="generating", bookId="b1", chaptersCompleted=4, totalChapters=10, progress=40),
    TransientServiceError("down"),
    TransientServiceError("down"),
    TransientServiceError("still down"),
  )
  orchestrator = BatchOrchestrator(service)

  with pytest.raises(FatalServiceError) as excinfo:
    await orchestrator.run(OUTLINE, {}, OPTIONS)

  error = excinfo.value
  assert error.book_id == "b1"
  assert error.message == "still down"
  assert error.resume_token is not None
  assert error.resume_token.book_id == "b1"
  assert error.resume_token.chapters_completed == 4
  assert error.job is not None and error.job.phase == "error"
  assert service.advance.await_count == 4


@pytest.mark.anyio
async def test_failures_before_any_success_escalate_without_book_id(delays: list[float]) -> None:
  service = FakeService(TransientServiceError("x"), TransientServiceError("x"), TransientServiceError("x"))

  with pytest.raises(FatalServiceError) as excinfo:
    await BatchOrchestrator(service).run(OUTLINE, {}, OPTIONS)

  assert excinfo.value.book_id is None
  assert excinfo.value.resume_token is None


@pytest.mark.anyio
async def test_resume_sends_book_id_from_the_first_call(delays: list[float]) -> None:
  messages: list[str] = []
  service = FakeService(_response(phase="completed", bookId="b9", chaptersCompleted=12, totalChapters=12, progress=100))

  job = await BatchOrchestrator(service).run(OUTLINE, {}, OPTIONS, book_id="b9", progress_callback=lambda snapshot: messages.append(snapshot.message))

  assert job.status == "completed"
  assert service.sent_book_ids() == ["b9"]
  assert messages[0] == "Resuming generation..."


@pytest.mark.anyio
async def test_cancel_aborts_in_flight_call_and_keeps_progress(delays: list[float]) -> None:
  token = CancellationToken()
  blocked = asyncio.Event()
  calls = 0

  async def _advance(request: object) -> AdvanceResponse:
    nonlocal calls
    calls += 1
    if calls == 1:
      return _response(phase="generating", bookId="b1", chaptersCompleted=4, totalChapters=10, progress=40)
    # Cancel while this request is on the wire.
    asyncio.get_running_loop().call_soon(token.cancel)
    await blocked.wait()
    raise AssertionError("the in-flight call should have been aborted")

  service = FakeService()
  service.advance = AsyncMock(side_effect=_advance)
  on_completed = AsyncMock()

  job = await BatchOrchestrator(service, on_completed=on_completed).run(OUTLINE, {}, OPTIONS, token=token)

  assert calls == 2
  assert job.status == "cancelled"
  assert job.phase == "generating"
  assert job.chapters_completed == 4
  assert job.book_id == "b1"
  on_completed.assert_not_awaited()


@pytest.mark.anyio
async def test_cancel_before_start_returns_without_calling_service(delays: list[float]) -> None:
  token = CancellationToken()
  token.cancel()
  service = FakeService()

  job = await BatchOrchestrator(service).run(OUTLINE, {}, OPTIONS, token=token)

  assert job.status == "cancelled"
  service.advance.assert_not_awaited()
