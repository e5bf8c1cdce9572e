from __future__ import annotations

import os
from pathlib import Path

import pytest

from bookforge.utils.env import load_env_file


def test_only_engine_settings_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.delenv("BOOKFORGE_TEST_BASE_URL", raising=False)
  monkeypatch.delenv("BOOKFORGE_TEST_API_KEY", raising=False)
  monkeypatch.delenv("UNRELATED_TEST_SETTING", raising=False)
  monkeypatch.setenv("BOOKFORGE_TEST_DEBUG", "false")
  env_file = tmp_path / ".env"
  env_file.write_text(
    "# local overrides\n"
    "export BOOKFORGE_TEST_BASE_URL='http://localhost:4000'\n"
    'BOOKFORGE_TEST_API_KEY="secret=with=equals"\n'
    "BOOKFORGE_TEST_DEBUG=true\n"
    "UNRELATED_TEST_SETTING=1\n"
    "not an assignment\n",
    encoding="utf-8",
  )

  applied = load_env_file(env_file)

  assert applied == ["BOOKFORGE_TEST_BASE_URL", "BOOKFORGE_TEST_API_KEY"]
  assert os.environ["BOOKFORGE_TEST_BASE_URL"] == "http://localhost:4000"
  assert os.environ["BOOKFORGE_TEST_API_KEY"] == "secret=with=equals"
  # Existing variables win unless overriding.
  assert os.environ["BOOKFORGE_TEST_DEBUG"] == "false"
  assert "UNRELATED_TEST_SETTING" not in os.environ


def test_override_replaces_existing_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("BOOKFORGE_TEST_DEBUG", "false")
  env_file = tmp_path / ".env"
  env_file.write_text("BOOKFORGE_TEST_DEBUG=true\n", encoding="utf-8")

  assert load_env_file(env_file, override=True) == ["BOOKFORGE_TEST_DEBUG"]
  assert os.environ["BOOKFORGE_TEST_DEBUG"] == "true"


def test_missing_file_applies_nothing(tmp_path: Path) -> None:
  assert load_env_file(tmp_path / "absent.env") == []
