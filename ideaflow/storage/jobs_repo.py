"""Storage interfaces for pipeline jobs."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Protocol

from ideaflow.jobs.models import JobRecord


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(self, job_id: str, **changes: Any) -> JobRecord | None:
    """Apply partial updates to a job and return the stored record."""

  async def list_jobs(self, *, user_id: str | None = None, status: str | None = None) -> list[JobRecord]:
    """Return jobs filtered by owner and status, oldest first."""


class InMemoryJobsRepository:
  """Process-local jobs repository."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}

  async def create_job(self, record: JobRecord) -> None:
    if record.job_id in self._jobs:
      raise KeyError(f"Job {record.job_id} already exists.")
    self._jobs[record.job_id] = replace(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return replace(record) if record is not None else None

  async def update_job(self, job_id: str, **changes: Any) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None:
      return None
    updated = replace(record, **changes)
    self._jobs[job_id] = updated
    return replace(updated)

  async def list_jobs(self, *, user_id: str | None = None, status: str | None = None) -> list[JobRecord]:
    records = [record for record in self._jobs.values() if (user_id is None or record.user_id == user_id) and (status is None or record.status == status)]
    return [replace(record) for record in sorted(records, key=lambda record: record.sequence)]
