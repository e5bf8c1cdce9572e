"""Orchestration engine for long-running book generation and narration runs."""

__version__ = "0.1.0"
