"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_correlation_id() -> str:
  """Return a new correlation identifier for a request or job."""
  return str(uuid.uuid4())


def resolve_correlation_id(candidate: str | None) -> str:
  """Reuse a caller-supplied correlation id when present, otherwise mint one."""
  if candidate is not None and candidate.strip():
    return candidate.strip()[:128]
  return generate_correlation_id()
