"""Domain models for queued pipeline jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Literal

JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]

TERMINAL_STATUSES: Final[frozenset[str]] = frozenset({"completed", "failed", "cancelled"})

# Allowed status moves; terminal statuses have none.
ALLOWED_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
  "pending": frozenset({"processing", "cancelled"}),
  "processing": frozenset({"completed", "failed", "cancelled"}),
  "completed": frozenset(),
  "failed": frozenset(),
  "cancelled": frozenset(),
}


@dataclass
class JobRecord:
  """One queued pipeline run for a session."""

  job_id: str
  user_id: str | None
  session_id: str
  request: dict[str, Any]
  status: JobStatus
  priority: int
  created_at: str
  updated_at: str
  sequence: int = 0
  output: dict[str, Any] | None = None
  error: str | None = None
  error_kind: str | None = None
  cancel_requested: bool = False
  started_at: str | None = None
  completed_at: str | None = None
  logs: list[str] = field(default_factory=list)

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES
