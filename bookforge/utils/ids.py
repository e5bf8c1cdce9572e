"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_run_id() -> str:
  """Return a new orchestration run identifier."""
  return str(uuid.uuid4())


def generate_request_id() -> str:
  """Return a request identifier for log correlation."""
  return uuid.uuid4().hex
