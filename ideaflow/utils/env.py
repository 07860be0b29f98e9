"""Lightweight .env loader for local configuration."""

from __future__ import annotations

import os
from pathlib import Path


def default_env_path() -> Path:
  """Return the default .env path at the repo root."""

  return Path(__file__).resolve().parents[2] / ".env"


def _strip_quotes(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    return value[1:-1]
  return value


def load_env_file(path: Path, *, override: bool = False) -> dict[str, str]:
  """Load key=value pairs from a .env file into the process environment.

  Returns the pairs that were applied so callers can log what changed.
  """

  applied: dict[str, str] = {}
  if not path.is_file():
    return applied

  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    if line.startswith("export "):
      line = line[len("export ") :].lstrip()
    if "=" not in line:
      continue
    key, value = line.split("=", 1)
    key = key.strip()
    if not key:
      continue
    if not override and key in os.environ:
      continue
    os.environ[key] = _strip_quotes(value.strip())
    applied[key] = os.environ[key]
  return applied
