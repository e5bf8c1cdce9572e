"""Optional .env support for local runs of the engine."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOOKFORGE_"


def default_env_path() -> Path:
  """Return the .env path next to the package root."""
  return Path(__file__).resolve().parents[2] / ".env"


def _parse_assignment(raw_line: str) -> tuple[str, str] | None:
  """Split one ``[export ]KEY=value`` line; comments and malformed lines yield None."""
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None
  line = line.removeprefix("export ").lstrip()
  key, sep, value = line.partition("=")
  key = key.strip()
  if not sep or not key:
    return None
  value = value.strip()
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    value = value[1:-1]
  return key, value


def load_env_file(path: Path, *, prefix: str = ENV_PREFIX, override: bool = False) -> list[str]:
  """Export the ``prefix``-scoped assignments of a .env file and return the keys applied.

  Keys outside the prefix are ignored so a shared .env cannot change unrelated
  process settings. Variables already present win unless ``override`` is set.
  """

  if not path.is_file():
    return []

  applied: list[str] = []
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    assignment = _parse_assignment(raw_line)
    if assignment is None:
      continue
    key, value = assignment
    if not key.startswith(prefix):
      continue
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied.append(key)

  if applied:
    logger.debug("Applied %s settings from %s: %s", len(applied), path, ", ".join(applied))
  return applied
