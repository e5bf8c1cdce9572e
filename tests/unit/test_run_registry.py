from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace

import pytest

from bookforge.config import get_settings
from bookforge.generation.contracts import ModelOptions, StreamRequest
from bookforge.jobs.models import GenerationJob
from bookforge.orchestrators.stream import StreamOrchestrator
from bookforge.services.entitlements import RECENT_PROMPTS_LIMIT, StaticEntitlementGate, UpgradeRequiredError, require_feature
from bookforge.services.runs import RunConflictError, RunRegistry

OPTIONS = ModelOptions(model_id="model-a")


def _gate(*, pro: bool = True) -> StaticEntitlementGate:
  return StaticEntitlementGate(replace(get_settings(), pro_features_enabled=pro))


class CompletingOrchestrator:
  """Text orchestrator double that completes on its first step."""

  mode = "batch"

  async def run(self, outline, config, model_options, *, book_id=None, token=None, progress_callback=None) -> GenerationJob:
    job = GenerationJob(phase="completed", book_id=book_id, chapters_completed=1, total_chapters=1, progress=100.0)
    if progress_callback is not None:
      await progress_callback(job)
    return job


class StalledStreamService:
  """Stream double that sends one record and then stays silent."""

  @asynccontextmanager
  async def stream(self, request: StreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
    async def _iterate() -> AsyncIterator[bytes]:
      yield f"data: {json.dumps({'bookId': 12, 'message': 'Book created'})}\n\n".encode()
      await asyncio.Event().wait()

    yield _iterate()


@pytest.mark.anyio
async def test_finished_runs_are_evicted_beyond_the_retention_bound() -> None:
  registry = RunRegistry(_gate(), max_finished_runs=3)

  handles = [registry.start_text_run(CompletingOrchestrator(), outline={}, config={}, model_options=OPTIONS, book_id=str(number)) for number in range(1, 6)]
  await asyncio.gather(*[handle.task for handle in handles])

  assert [registry.get(handle.run_id) is not None for handle in handles] == [False, False, True, True, True]
  assert all(handle.status == "completed" for handle in handles)
  assert registry.active_run("text", "5") is None


@pytest.mark.anyio
async def test_active_book_rejects_a_second_run_until_it_finishes() -> None:
  registry = RunRegistry(_gate())
  first = registry.start_text_run(StreamOrchestrator(StalledStreamService()), outline={}, config={}, model_options=OPTIONS, book_id="12")

  with pytest.raises(RunConflictError) as exc_info:
    registry.start_text_run(CompletingOrchestrator(), outline={}, config={}, model_options=OPTIONS, book_id="12")
  assert exc_info.value.active_run_id == first.run_id

  await asyncio.wait_for(registry.shutdown(), timeout=2.0)

  assert first.status == "cancelled"
  assert first.resume_token.book_id == "12"
  assert registry.active_run("text", "12") is None


@pytest.mark.anyio
async def test_shutdown_settles_a_stalled_stream_run() -> None:
  registry = RunRegistry(_gate())
  handle = registry.start_text_run(StreamOrchestrator(StalledStreamService()), outline={}, config={}, model_options=OPTIONS)

  for _ in range(1000):
    if handle.job is not None and handle.job.book_id == "12":
      break
    await asyncio.sleep(0)

  await asyncio.wait_for(registry.shutdown(), timeout=2.0)

  assert handle.status == "cancelled"
  assert handle.job.book_id == "12"


def test_upgrade_prompt_history_is_bounded() -> None:
  gate = _gate(pro=False)

  for _ in range(RECENT_PROMPTS_LIMIT + 25):
    with pytest.raises(UpgradeRequiredError):
      require_feature(gate, "audiobook")

  assert len(gate.upgrade_prompts) == RECENT_PROMPTS_LIMIT
