"""Lenient JSON parsing for model outputs."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"(?P<lead>[{,]\s*)(?P<key>[A-Za-z_][A-Za-z0-9_\-]*)(?P<gap>\s*):")


def parse_json_with_fallback(raw: str) -> Any:
  """Parse JSON, applying progressively looser repairs when strict parsing fails.

  Repairs run in order on the first balanced object/array found in `raw`: trailing
  commas are dropped, then bare object keys are quoted. The last decode error
  propagates when nothing works.
  """
  try:
    return json.loads(raw)
  except json.JSONDecodeError as exc:
    last_error = exc

  candidate = extract_json_block(raw)
  if candidate is None:
    raise last_error

  repairs: list[Callable[[str], str]] = [_identity, _strip_trailing_commas, _quote_bare_keys]
  text = candidate
  for repair in repairs:
    text = repair(text)
    try:
      return json.loads(text)
    except json.JSONDecodeError as exc:
      last_error = exc

  raise last_error


def extract_json_block(raw: str) -> str | None:
  """Return the first balanced JSON object or array in `raw`, honoring string escapes."""
  start: int | None = None
  depth = 0
  in_string = False
  escape = False

  for index, char in enumerate(raw):
    if start is None:
      if char in "{[":
        start = index
        depth = 1
      continue

    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char in "{[":
      depth += 1
    elif char in "}]":
      depth -= 1
      if depth == 0:
        return raw[start : index + 1]

  return None


def _identity(raw: str) -> str:
  return raw


def _strip_trailing_commas(raw: str) -> str:
  return _TRAILING_COMMA_RE.sub(r"\1", raw)


def _quote_bare_keys(raw: str) -> str:
  """Quote identifier keys outside string literals (`{key: 1}` -> `{"key": 1}`)."""
  pieces: list[str] = []
  segment_start = 0
  in_string = False
  escape = False

  # Only rewrite the stretches that lie outside string literals.
  for index, char in enumerate(raw):
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
        pieces.append(raw[segment_start : index + 1])
        segment_start = index + 1
      continue
    if char == '"':
      pieces.append(_BARE_KEY_RE.sub(r'\g<lead>"\g<key>"\g<gap>:', raw[segment_start:index]))
      segment_start = index
      in_string = True

  tail = raw[segment_start:]
  pieces.append(tail if in_string else _BARE_KEY_RE.sub(r'\g<lead>"\g<key>"\g<gap>:', tail))
  return "".join(pieces)
