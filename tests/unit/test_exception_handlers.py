"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

from bookforge.core.exceptions import _coerce_json_safe, _error_payload, _sanitize_validation_errors


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "outline"), "msg": "Value error, Outline has no chapters.", "input": {"title": "Private draft"}, "ctx": {"error": ValueError("Outline has no chapters."), "input": {"title": "Private draft"}}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["ctx"]["error"] == "ValueError: Outline has no chapters."
  assert "input" not in sanitized[0]["ctx"]
  assert sanitized[0]["loc"] == ["body", "outline"]


def test_error_payload_attaches_request_id_and_extras() -> None:
  payload = _error_payload("Run already active", request_id="req-1", activeRunId="run-9")
  assert payload == {"detail": "Run already active", "activeRunId": "run-9", "requestId": "req-1"}
  assert "requestId" not in _error_payload("x")


def test_coerce_json_safe_stringifies_unknown_values() -> None:
  assert _coerce_json_safe({1: {2, 3}}) in ({"1": [2, 3]}, {"1": [3, 2]})
  assert _coerce_json_safe(RuntimeError()) == "RuntimeError"
