"""Timestamp helpers shared by records and events."""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
  """Return an aware UTC timestamp."""
  return datetime.now(UTC)


def utc_now_iso() -> str:
  """Return the current UTC time in the ISO form stored on job records."""
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
