"""Cache of finished-book views invalidated when a generation run completes."""

from __future__ import annotations

from collections import deque
from typing import Any, Protocol

# Only the most recent invalidations are kept for inspection.
RECENT_INVALIDATIONS_LIMIT = 100


class BookCache(Protocol):
  """Result cache keyed by book id."""

  async def get(self, book_id: str) -> Any | None:
    """Return a cached entry."""

  async def put(self, book_id: str, value: Any) -> None:
    """Store an entry."""

  async def invalidate(self, book_id: str) -> None:
    """Drop every entry for a book."""


class InMemoryBookCache:
  """Dictionary-backed cache that records its most recent invalidations."""

  def __init__(self) -> None:
    self._items: dict[str, Any] = {}
    self.invalidated: deque[str] = deque(maxlen=RECENT_INVALIDATIONS_LIMIT)

  async def get(self, book_id: str) -> Any | None:
    return self._items.get(book_id)

  async def put(self, book_id: str, value: Any) -> None:
    self._items[book_id] = value

  async def invalidate(self, book_id: str) -> None:
    self._items.pop(book_id, None)
    self.invalidated.append(book_id)
