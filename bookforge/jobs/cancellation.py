"""Cooperative cancellation shared by a single orchestration run."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from bookforge.jobs.errors import JobCanceledError

T = TypeVar("T")


class CancellationToken:
  """Cancellation flag plus the handle of the one in-flight operation.

  Orchestrators call :meth:`raise_if_cancelled` at their suspension points and route
  each network call through :meth:`run`, so that :meth:`cancel` can abort the
  request currently on the wire.
  """

  def __init__(self) -> None:
    self._cancelled = False
    self._in_flight: asyncio.Task[Any] | None = None

  @property
  def cancelled(self) -> bool:
    """Return True once cancellation was requested."""
    return self._cancelled

  def cancel(self) -> None:
    """Request cancellation and abort the in-flight operation, if any."""
    self._cancelled = True
    if self._in_flight is not None and not self._in_flight.done():
      self._in_flight.cancel()

  def raise_if_cancelled(self) -> None:
    """Raise JobCanceledError when cancellation was requested."""
    if self._cancelled:
      raise JobCanceledError("Run was canceled.")

  async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Run one network operation as the token's in-flight handle."""

    self.raise_if_cancelled()
    task = asyncio.ensure_future(func(*args, **kwargs))
    self._in_flight = task
    try:
      return await task
    except asyncio.CancelledError:
      # Only translate aborts this token caused; outer task cancellation must propagate.
      if self._cancelled and task.cancelled():
        current = asyncio.current_task()
        if current is None or not current.cancelling():
          raise JobCanceledError("Run was canceled.") from None
      raise
    finally:
      self._in_flight = None
