"""Minimal .env support so local runs can configure ADCRAFT_* settings from a file."""

from __future__ import annotations

import os
from pathlib import Path

_QUOTES = ('"', "'")


def default_env_path() -> Path:
  """Return the .env path at the project root."""
  return Path(__file__).resolve().parents[2] / ".env"


def parse_env_line(raw_line: str) -> tuple[str, str] | None:
  """Split one .env line into a key/value pair, or None for comments and junk."""
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None
  line = line.removeprefix("export ").lstrip()
  key, sep, value = line.partition("=")
  key = key.strip()
  if not sep or not key:
    return None
  value = value.strip()
  # Strip one level of matching quotes.
  if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
    value = value[1:-1]
  return key, value


def load_env_file(path: Path, *, override: bool = False) -> int:
  """Export entries from a .env file and return how many were applied."""
  if not path.is_file():
    return 0

  applied = 0
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    parsed = parse_env_line(raw_line)
    if parsed is None:
      continue
    key, value = parsed
    if key in os.environ and not override:
      continue
    os.environ[key] = value
    applied += 1
  return applied
