"""Shared FastAPI dependencies wiring the engine's collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from fastapi import Depends, Request

from bookforge.config import Settings
from bookforge.generation.client import GenerationService, HttpGenerationService
from bookforge.orchestrators.base import TextOrchestrator
from bookforge.orchestrators.batch import BatchOrchestrator
from bookforge.orchestrators.stream import StreamOrchestrator
from bookforge.services.archive import ArchiveBuilder
from bookforge.services.entitlements import EntitlementGate, StaticEntitlementGate
from bookforge.services.runs import RunRegistry
from bookforge.storage.book_cache import BookCache, InMemoryBookCache
from bookforge.storage.preferences_repo import InMemoryPreferencesRepository, JsonFilePreferencesRepository, PreferencesRepository

logger = logging.getLogger(__name__)


@dataclass
class EngineServices:
  """Process-wide collaborators shared by every request."""

  settings: Settings
  generation_service: GenerationService
  gate: EntitlementGate
  registry: RunRegistry
  preferences_repo: PreferencesRepository
  book_cache: BookCache

  def text_orchestrator(self, mode: Literal["batch", "stream"]) -> TextOrchestrator:
    """Build the orchestrator for the requested transport."""
    if mode == "stream":
      return StreamOrchestrator(self.generation_service, book_cache=self.book_cache)
    return BatchOrchestrator(
      self.generation_service,
      book_cache=self.book_cache,
      retry_delay_seconds=self.settings.batch_retry_delay_seconds,
      poll_interval_seconds=self.settings.batch_poll_interval_seconds,
      max_consecutive_errors=self.settings.batch_max_consecutive_errors,
    )

  def archive_builder(self) -> ArchiveBuilder:
    return ArchiveBuilder(self.generation_service, compression_level=self.settings.archive_compression_level)


def build_services(settings: Settings, *, generation_service: GenerationService | None = None, gate: EntitlementGate | None = None) -> EngineServices:
  """Create the default collaborators for a process."""
  gate = gate or StaticEntitlementGate(settings)
  # Preferences fall back to process memory when no file is configured.
  if settings.preferences_path:
    preferences_repo: PreferencesRepository = JsonFilePreferencesRepository(settings.preferences_path)
  else:
    logger.info("BOOKFORGE_PREFERENCES_PATH not set; narration preferences are kept in memory.")
    preferences_repo = InMemoryPreferencesRepository()

  return EngineServices(
    settings=settings,
    generation_service=generation_service or HttpGenerationService(settings),
    gate=gate,
    registry=RunRegistry(gate, max_finished_runs=settings.max_finished_runs),
    preferences_repo=preferences_repo,
    book_cache=InMemoryBookCache(),
  )


def get_services(request: Request) -> EngineServices:
  """Return the collaborators attached to the running app."""
  return request.app.state.services


def get_registry(services: EngineServices = Depends(get_services)) -> RunRegistry:  # noqa: B008
  return services.registry
