"""Storage interfaces for final and partial report artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol

ReportKind = Literal["final", "partial"]


@dataclass(frozen=True)
class ReportRecord:
  report_id: str
  session_id: str
  user_id: str | None
  kind: ReportKind
  payload: dict[str, Any]
  created_at: str


class ReportsRepository(Protocol):
  """Repository contract for report artifacts."""

  async def save_report(self, record: ReportRecord) -> None:
    """Persist a report artifact."""

  async def get_report(self, report_id: str, *, user_id: str | None = None) -> ReportRecord | None:
    """Fetch a report, scoped to its owner when `user_id` is given."""

  async def list_for_session(self, session_id: str) -> list[ReportRecord]:
    """Return reports saved for a session, oldest first."""


class InMemoryReportsRepository:
  """Process-local report repository."""

  def __init__(self) -> None:
    self._reports: dict[str, ReportRecord] = {}

  async def save_report(self, record: ReportRecord) -> None:
    self._reports[record.report_id] = record

  async def get_report(self, report_id: str, *, user_id: str | None = None) -> ReportRecord | None:
    record = self._reports.get(report_id)
    if record is None or (user_id is not None and record.user_id != user_id):
      return None
    return record

  async def list_for_session(self, session_id: str) -> list[ReportRecord]:
    return [record for record in self._reports.values() if record.session_id == session_id]
