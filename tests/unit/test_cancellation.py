from __future__ import annotations

import asyncio

import pytest

from bookforge.jobs.cancellation import CancellationToken
from bookforge.jobs.errors import JobCanceledError


def test_raise_if_cancelled() -> None:
  token = CancellationToken()
  token.raise_if_cancelled()

  token.cancel()

  assert token.cancelled
  with pytest.raises(JobCanceledError):
    token.raise_if_cancelled()


@pytest.mark.anyio
async def test_run_returns_the_operation_result() -> None:
  async def operation(value: int, *, scale: int) -> int:
    return value * scale

  assert await CancellationToken().run(operation, 3, scale=2) == 6


@pytest.mark.anyio
async def test_cancel_aborts_the_in_flight_operation() -> None:
  token = CancellationToken()
  started = asyncio.Event()
  aborted = asyncio.Event()

  async def operation() -> None:
    started.set()
    try:
      await asyncio.Event().wait()
    except asyncio.CancelledError:
      aborted.set()
      raise

  task = asyncio.ensure_future(token.run(operation))
  await started.wait()
  token.cancel()

  with pytest.raises(JobCanceledError):
    await task
  assert aborted.is_set()


@pytest.mark.anyio
async def test_run_refuses_to_start_after_cancel() -> None:
  token = CancellationToken()
  calls: list[str] = []

  async def operation() -> None:
    calls.append("called")

  token.cancel()
  with pytest.raises(JobCanceledError):
    await token.run(operation)
  assert calls == []


@pytest.mark.anyio
async def test_outer_task_cancellation_is_not_translated() -> None:
  token = CancellationToken()
  started = asyncio.Event()

  async def operation() -> None:
    started.set()
    await asyncio.Event().wait()

  task = asyncio.ensure_future(token.run(operation))
  await started.wait()
  task.cancel()

  with pytest.raises(asyncio.CancelledError):
    await task
  assert not token.cancelled
