from __future__ import annotations

from pathlib import Path

from bookforge.storage.preferences_repo import AudioPreferences, JsonFilePreferencesRepository


def test_json_file_keeps_preferences_per_book(tmp_path: Path) -> None:
  path = tmp_path / "prefs" / "audio.json"
  repo = JsonFilePreferencesRepository(path)

  repo.save("book-1", AudioPreferences(voice="nova", speed=1.25, quality="hd"))
  repo.save("book-2", AudioPreferences(provider="gemini", voice="Kore"))

  reopened = JsonFilePreferencesRepository(path)
  assert reopened.load("book-1") == AudioPreferences(voice="nova", speed=1.25, quality="hd")
  assert reopened.load("book-2") == AudioPreferences(provider="gemini", voice="Kore")
  assert reopened.load("book-3") is None
  assert not path.with_suffix(".json.tmp").exists()


def test_corrupt_file_is_ignored_and_replaced(tmp_path: Path) -> None:
  path = tmp_path / "audio.json"
  path.write_bytes(b"{not json")
  repo = JsonFilePreferencesRepository(path)

  assert repo.load("book-1") is None

  repo.save("book-1", AudioPreferences(voice="alloy"))
  assert repo.load("book-1") == AudioPreferences(voice="alloy")


def test_invalid_stored_values_fall_back_to_defaults() -> None:
  preferences = AudioPreferences.from_mapping({"provider": "acme", "voice": "", "speed": -2, "quality": "ultra", "extra": True})

  assert preferences == AudioPreferences()
  assert preferences.model == "tts-1"
  assert AudioPreferences(quality="hd").model == "tts-1-hd"


def test_merged_ignores_unset_changes() -> None:
  base = AudioPreferences(voice="nova", speed=1.5)

  assert base.merged(voice=None, speed=0.75) == AudioPreferences(voice="nova", speed=0.75)
