"""Per-book narration preferences storage."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal, Protocol

import msgspec

from bookforge.generation.contracts import TTSModel, TTSProvider

logger = logging.getLogger(__name__)

VoiceQuality = Literal["standard", "hd"]

# Quality labels shown to users map onto the narration service's model ids.
QUALITY_MODELS: dict[str, TTSModel] = {"standard": "tts-1", "hd": "tts-1-hd"}


@dataclass(frozen=True)
class AudioPreferences:
  """Voice settings remembered per book."""

  provider: TTSProvider = "openai"
  voice: str | None = None
  speed: float = 1.0
  quality: VoiceQuality = "standard"

  @property
  def model(self) -> TTSModel:
    """Return the narration model id for the selected quality."""
    return QUALITY_MODELS[self.quality]

  def merged(self, **changes: Any) -> AudioPreferences:
    """Return a copy with the non-None changes applied."""
    return replace(self, **{key: value for key, value in changes.items() if value is not None})

  @classmethod
  def from_mapping(cls, raw: dict[str, Any]) -> AudioPreferences:
    """Build preferences from a stored document, ignoring unknown or invalid keys."""
    defaults = cls()
    provider = raw.get("provider") if raw.get("provider") in {"openai", "gemini"} else defaults.provider
    quality = raw.get("quality") if raw.get("quality") in QUALITY_MODELS else defaults.quality
    voice = raw.get("voice") if isinstance(raw.get("voice"), str) and raw.get("voice") else None
    speed = raw.get("speed")
    if not isinstance(speed, int | float) or isinstance(speed, bool) or speed <= 0:
      speed = defaults.speed
    return cls(provider=provider, voice=voice, speed=float(speed), quality=quality)


class PreferencesRepository(Protocol):
  """Key-value store of preferences scoped by book id."""

  def load(self, book_id: str) -> AudioPreferences | None:
    """Return stored preferences for a book, if any."""

  def save(self, book_id: str, preferences: AudioPreferences) -> None:
    """Persist preferences for a book."""


class InMemoryPreferencesRepository:
  """Process-local preferences store used by tests and ephemeral deployments."""

  def __init__(self) -> None:
    self._items: dict[str, AudioPreferences] = {}
    self.save_count = 0

  def load(self, book_id: str) -> AudioPreferences | None:
    return self._items.get(book_id)

  def save(self, book_id: str, preferences: AudioPreferences) -> None:
    self._items[book_id] = preferences
    self.save_count += 1


class JsonFilePreferencesRepository:
  """Preferences persisted as one JSON document keyed by book id."""

  def __init__(self, path: str | Path) -> None:
    self.path = Path(path)
    self._lock = threading.Lock()

  def _read_all(self) -> dict[str, Any]:
    if not self.path.exists():
      return {}
    try:
      document = msgspec.json.decode(self.path.read_bytes())
    except msgspec.DecodeError:
      # A corrupt document is replaced on the next save rather than blocking narration.
      logger.warning("Ignoring unreadable preferences file at %s", self.path)
      return {}
    return document if isinstance(document, dict) else {}

  def load(self, book_id: str) -> AudioPreferences | None:
    with self._lock:
      raw = self._read_all().get(book_id)
    if not isinstance(raw, dict):
      return None
    return AudioPreferences.from_mapping(raw)

  def save(self, book_id: str, preferences: AudioPreferences) -> None:
    with self._lock:
      document = self._read_all()
      document[book_id] = asdict(preferences)
      self.path.parent.mkdir(parents=True, exist_ok=True)
      # Write to a sibling file first so readers never observe a partial document.
      tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
      tmp_path.write_bytes(msgspec.json.encode(document))
      tmp_path.replace(self.path)
