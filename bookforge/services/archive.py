"""Packaging of narrated chapters into one downloadable bundle."""

from __future__ import annotations

import io
import logging
import re
import zlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Literal
from urllib.parse import urlparse

import pyzipper
from starlette.concurrency import run_in_threadpool

from bookforge.generation.client import GenerationService
from bookforge.jobs.errors import ArchiveEmptyError, ArchiveError, ArtifactFetchError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "mp3"
DEFAULT_COMPRESSION_LEVEL = 6
# An archive this small cannot hold any audio; treat it as a failed build.
MIN_BUNDLE_BYTES = 100

_UNSAFE_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)


@dataclass(frozen=True)
class ArchiveItem:
  """One artifact to deliver; ``number`` drives the filename prefix."""

  locator: str
  suggested_name: str
  number: int | None = None


@dataclass(frozen=True)
class OmittedItem:
  item: ArchiveItem
  reason: str


@dataclass(frozen=True)
class FileTransfer:
  """A single file handed to the caller, with its bytes when they were fetched."""

  filename: str
  locator: str
  content: bytes | None = None


@dataclass
class ArchiveResult:
  """What was delivered: one file, one bundle, or individual files after a bundle failure."""

  kind: Literal["single", "bundle", "individual"]
  filename: str | None = None
  content: bytes | None = None
  entries: list[str] = field(default_factory=list)
  transfers: list[FileTransfer] = field(default_factory=list)
  omitted: list[OmittedItem] = field(default_factory=list)


def sanitize_name(value: str) -> str:
  """Replace every character outside ``[a-z0-9]`` (any case) with an underscore."""
  return _UNSAFE_CHARS.sub("_", value)


def _extension(locator: str) -> str:
  suffix = PurePosixPath(urlparse(locator).path).suffix.lstrip(".").lower()
  return suffix if suffix.isalnum() else DEFAULT_EXTENSION


def bundle_entry_name(index: int, item: ArchiveItem) -> str:
  """Build ``NN_Title.ext`` using the item number, or its position when unnumbered."""
  number = item.number if item.number is not None else index
  return f"{number:02d}_{sanitize_name(item.suggested_name)}.{_extension(item.locator)}"


def single_file_name(book_title: str, item: ArchiveItem) -> str:
  """Build the standalone filename for one chapter."""
  number = item.number if item.number is not None else 1
  return f"{sanitize_name(book_title)}_Chapter_{number}_{sanitize_name(item.suggested_name)}.{_extension(item.locator)}"


def _dedupe(names: Sequence[str]) -> list[str]:
  """Suffix repeated names so every bundle entry is unique."""
  seen: dict[str, int] = {}
  unique: list[str] = []
  for name in names:
    count = seen.get(name, 0) + 1
    seen[name] = count
    if count == 1:
      unique.append(name)
      continue
    path = PurePosixPath(name)
    unique.append(f"{path.stem}_{count}{path.suffix}")
  return unique


def _zip_entries(*, folder: str, entries: Sequence[tuple[str, bytes]], compression_level: int) -> bytes:
  """Write entries under ``folder`` into an in-memory DEFLATE archive."""
  buffer = io.BytesIO()
  with pyzipper.ZipFile(buffer, mode="w", compression=pyzipper.ZIP_DEFLATED, compresslevel=compression_level) as archive:
    for name, payload in entries:
      archive.writestr(f"{folder}/{name}", payload)
  return buffer.getvalue()


class ArchiveBuilder:
  """Deliver narrated chapters as one file or one bundle, degrading to individual files."""

  def __init__(self, service: GenerationService, *, compression_level: int = DEFAULT_COMPRESSION_LEVEL) -> None:
    self.service = service
    self.compression_level = compression_level

  async def build(self, items: Sequence[ArchiveItem], *, book_title: str) -> ArchiveResult:
    """Package ``items`` for download.

    A single item is transferred directly. Multiple items are fetched one after
    another; empty or failed items are omitted and reported. Raises
    ArchiveEmptyError when nothing could be fetched.
    """

    if not items:
      raise ValueError("At least one item is required.")

    if len(items) == 1:
      return await self._single(items[0], book_title=book_title)

    fetched: list[tuple[ArchiveItem, bytes]] = []
    omitted: list[OmittedItem] = []
    # Sequential on purpose: one transfer in flight and one payload in memory at a time.
    for item in items:
      try:
        payload = await self.service.fetch_artifact(item.locator)
      except ArtifactFetchError as exc:
        logger.warning("Omitting %s from archive: %s", item.locator, exc)
        omitted.append(OmittedItem(item=item, reason=str(exc)))
        continue
      if not payload:
        logger.warning("Omitting %s from archive: empty body", item.locator)
        omitted.append(OmittedItem(item=item, reason="Empty file"))
        continue
      fetched.append((item, payload))

    if not fetched:
      raise ArchiveEmptyError(f"None of the {len(items)} items could be downloaded.")

    folder = f"{sanitize_name(book_title)}_Audiobook"
    names = _dedupe([bundle_entry_name(index, item) for index, (item, _) in enumerate(fetched, start=1)])

    try:
      content = await self._bundle(folder=folder, entries=list(zip(names, [payload for _, payload in fetched], strict=True)))
    except ArchiveError as exc:
      logger.warning("Bundle creation failed for %s, falling back to individual files: %s", folder, exc)
      transfers = [FileTransfer(filename=single_file_name(book_title, item), locator=item.locator, content=payload) for item, payload in fetched]
      return ArchiveResult(kind="individual", transfers=transfers, omitted=omitted)

    logger.info("Built archive %s with %s entries, %s omitted", folder, len(names), len(omitted))
    return ArchiveResult(kind="bundle", filename=f"{folder}.zip", content=content, entries=[f"{folder}/{name}" for name in names], omitted=omitted)

  async def _single(self, item: ArchiveItem, *, book_title: str) -> ArchiveResult:
    """Transfer one item as-is; a failure here is a failure of the whole request."""
    try:
      payload = await self.service.fetch_artifact(item.locator)
    except ArtifactFetchError as exc:
      raise ArchiveEmptyError(f"Could not download {item.locator}: {exc}") from exc
    if not payload:
      raise ArchiveEmptyError(f"Downloaded file for {item.locator} is empty.")

    filename = single_file_name(book_title, item)
    return ArchiveResult(kind="single", filename=filename, content=payload, transfers=[FileTransfer(filename=filename, locator=item.locator, content=payload)])

  async def _bundle(self, *, folder: str, entries: Sequence[tuple[str, bytes]]) -> bytes:
    """Compress off the event loop; any writer failure or undersized output is an ArchiveError."""
    try:
      content = await run_in_threadpool(_zip_entries, folder=folder, entries=entries, compression_level=self.compression_level)
    except (pyzipper.BadZipFile, pyzipper.LargeZipFile, zlib.error, OSError, ValueError) as exc:
      raise ArchiveError(f"Failed to create archive: {exc}") from exc

    if len(content) < MIN_BUNDLE_BYTES:
      raise ArchiveError(f"Generated archive is too small ({len(content)} bytes).")
    return content
