"""Test configuration for importing the engine package."""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

# Keep test runs away from developer log and preference files.
os.environ.setdefault("BOOKFORGE_LOG_DIR", str(ROOT / ".pytest_logs"))
os.environ.setdefault("BOOKFORGE_GENERATION_BASE_URL", "http://generation.test")

import pytest  # noqa: E402

from bookforge.jobs.models import AudioChapterState  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def chapters() -> list[AudioChapterState]:
  return [AudioChapterState(chapter_number=number, title=f"Chapter {number}") for number in (1, 2, 3)]
