"""Local .env support so credentials can live outside the shell profile."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_VARIABLE = "DOCGEN_ENV_FILE"


def default_env_path() -> Path:
  """DOCGEN_ENV_FILE when set, else .env beside the docgen package."""
  explicit = os.getenv(ENV_FILE_VARIABLE)
  if explicit:
    return Path(explicit).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _parse_value(raw: str) -> str:
  # Double quotes allow escaped newlines so PEM keys (SF_PRIVATE_KEY) fit on one line.
  if len(raw) >= 2 and raw[0] == raw[-1] == '"':
    return raw[1:-1].replace("\\n", "\n")
  if len(raw) >= 2 and raw[0] == raw[-1] == "'":
    return raw[1:-1]
  # Unquoted values may carry a trailing " # comment".
  return raw.split(" #", 1)[0].rstrip()


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Export KEY=value lines from path; returns the keys that were set."""
  if not path.is_file():
    return []

  applied: list[str] = []
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    line = line.removeprefix("export ").lstrip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
      continue
    if not override and key in os.environ:
      continue
    os.environ[key] = _parse_value(value.strip())
    applied.append(key)
  return applied
