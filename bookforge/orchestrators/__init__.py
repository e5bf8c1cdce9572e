"""Run drivers for book generation and narration."""

from .audio import AudioJobOrchestrator, AudioRunResult, ChapterMode, FullBookMode
from .batch import BatchOrchestrator, RetryState
from .stream import StreamOrchestrator

__all__ = ["AudioJobOrchestrator", "AudioRunResult", "BatchOrchestrator", "ChapterMode", "FullBookMode", "RetryState", "StreamOrchestrator"]
