"""HTTP client for the external generation service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import httpx
from pydantic import ValidationError

from bookforge.config import Settings
from bookforge.generation.contracts import AdvanceRequest, AdvanceResponse, AudioRequest, AudioResponse, StreamRequest
from bookforge.jobs.errors import ArtifactFetchError, AudioNetworkError, AudioTimeoutError, FatalServiceError, ServiceReportedError, TransientServiceError

logger = logging.getLogger(__name__)

ADVANCE_PATH = "/api/generate/book-incremental"
STREAM_PATH = "/api/generate/book-stream"
AUDIO_PATH = "/api/generate/audio"


class GenerationService(Protocol):
  """Operations the orchestrators consume from the generation service."""

  async def advance(self, request: AdvanceRequest) -> AdvanceResponse:
    """Advance a book by one batch."""
    ...

  def stream(self, request: StreamRequest) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
    """Open the event stream; used as ``async with service.stream(req) as chunks``."""
    ...

  async def generate_audio(self, request: AudioRequest) -> AudioResponse:
    """Narrate the full book or the requested chapters."""
    ...

  async def fetch_artifact(self, locator: str) -> bytes:
    """Download the bytes of a generated artifact."""
    ...


class HttpGenerationService:
  """GenerationService over httpx; maps transport failures onto the engine's error taxonomy."""

  def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
    self.settings = settings
    self._client = client
    self._owns_client = client is None

  def _headers(self) -> dict[str, str]:
    """Build request headers, attaching the bearer token when configured."""
    headers = {"accept": "application/json"}
    if self.settings.generation_api_key:
      headers["authorization"] = f"Bearer {self.settings.generation_api_key}"
    return headers

  def _get_client(self) -> httpx.AsyncClient:
    """Return the shared client, creating it lazily."""
    if self._client is None:
      # Long reads are normal here; only connection establishment is bounded by default.
      timeout = httpx.Timeout(None, connect=self.settings.http_connect_timeout_seconds)
      self._client = httpx.AsyncClient(base_url=self.settings.generation_base_url, timeout=timeout, trust_env=False)
    return self._client

  async def aclose(self) -> None:
    """Close the underlying client when this service created it."""
    if self._client is not None and self._owns_client:
      await self._client.aclose()
      self._client = None

  async def advance(self, request: AdvanceRequest) -> AdvanceResponse:
    """POST one batch step; every failure is reported as retryable."""
    client = self._get_client()
    try:
      response = await client.post(ADVANCE_PATH, json=request.to_wire(), headers=self._headers())
    except httpx.RequestError as e:
      logger.warning(f"Advance request failed for book {request.book_id}: {e}")
      raise TransientServiceError(f"Network error: {e}", book_id=request.book_id) from e

    try:
      payload = AdvanceResponse.model_validate_json(response.content)
    except ValidationError as e:
      logger.warning(f"Advance returned an unreadable body with status {response.status_code}")
      raise TransientServiceError(f"Generation service returned status {response.status_code}", book_id=request.book_id) from e

    # Non-2xx bodies still carry the service's error fields; surface the most specific one.
    if response.is_error or not payload.success:
      raise TransientServiceError(payload.failure_message, book_id=payload.book_id or request.book_id)

    return payload

  @asynccontextmanager
  async def stream(self, request: StreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
    """Open the event stream and yield its raw byte chunks."""
    client = self._get_client()
    try:
      async with client.stream("POST", STREAM_PATH, json=request.to_wire(), headers={**self._headers(), "accept": "text/event-stream"}) as response:
        if response.is_error:
          body = await response.aread()
          logger.error(f"Stream endpoint returned {response.status_code}: {body[:500]!r}")
          raise FatalServiceError(f"Failed to start generation (status {response.status_code})", book_id=request.book_id)
        yield response.aiter_bytes()
    except httpx.RequestError as e:
      logger.error(f"Stream connection failed for book {request.book_id}: {e}")
      raise FatalServiceError(f"Stream connection failed: {e}", book_id=request.book_id) from e

  async def generate_audio(self, request: AudioRequest) -> AudioResponse:
    """POST one narration request with the audio deadline applied at the transport."""
    client = self._get_client()
    chapter = request.chapter_numbers[0] if request.chapter_numbers and len(request.chapter_numbers) == 1 else None
    timeout = httpx.Timeout(self.settings.audio_request_timeout_seconds, connect=self.settings.http_connect_timeout_seconds)
    try:
      response = await client.post(AUDIO_PATH, json=request.to_wire(), headers=self._headers(), timeout=timeout)
    except httpx.TimeoutException as e:
      logger.warning(f"Audio request timed out for book {request.book_id} chapter {chapter}")
      raise AudioTimeoutError("Audio generation timed out.", chapter_number=chapter, book_id=request.book_id) from e
    except httpx.RequestError as e:
      logger.warning(f"Audio request failed for book {request.book_id} chapter {chapter}: {e}")
      raise AudioNetworkError(f"Network error: {e}", chapter_number=chapter, book_id=request.book_id) from e

    try:
      payload = AudioResponse.model_validate_json(response.content)
    except ValidationError as e:
      raise ServiceReportedError(f"Audio service returned status {response.status_code}", chapter_number=chapter, book_id=request.book_id) from e

    if response.is_error or not payload.success:
      raise ServiceReportedError(payload.failure_message, chapter_number=chapter, hint=payload.hint, book_id=request.book_id)

    return payload

  async def fetch_artifact(self, locator: str) -> bytes:
    """Download one artifact; a failed transfer raises ArtifactFetchError."""
    client = self._get_client()
    try:
      response = await client.get(locator)
      response.raise_for_status()
    except httpx.HTTPStatusError as e:
      logger.warning(f"Artifact fetch returned {e.response.status_code} for {locator}")
      raise ArtifactFetchError(f"Fetch failed with status {e.response.status_code}", locator=locator) from e
    except httpx.RequestError as e:
      logger.warning(f"Artifact fetch failed for {locator}: {e}")
      raise ArtifactFetchError(f"Fetch failed: {e}", locator=locator) from e

    return response.content
