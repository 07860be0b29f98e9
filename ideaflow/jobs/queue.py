"""Priority job queue with a monotone status lifecycle."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Any

from ideaflow.ai.errors import QueueError
from ideaflow.ai.pipeline.requests import PipelineRequestStruct, encode_pipeline_request
from ideaflow.jobs.models import ALLOWED_TRANSITIONS, JobRecord, JobStatus
from ideaflow.storage.jobs_repo import JobsRepository
from ideaflow.utils.ids import generate_job_id
from ideaflow.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

MIN_PRIORITY = -10
MAX_PRIORITY = 10


class JobQueue:
  """Serve pending jobs highest priority first, ties in enqueue order.

  At most one job per session is `processing` at any time; `dequeue` passes over
  jobs whose session is busy and leaves them pending.
  """

  def __init__(self, repo: JobsRepository) -> None:
    self._repo = repo
    self._heap: list[tuple[int, int, str]] = []
    self._sequence = itertools.count(1)
    self._processing_sessions: dict[str, str] = {}
    self._lock = asyncio.Lock()

  async def enqueue(self, request: PipelineRequestStruct, *, user_id: str | None = None, priority: int = 0, job_id: str | None = None) -> str:
    """Create a pending job for a pipeline request and return its id."""
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
      raise QueueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.")

    async with self._lock:
      sequence = next(self._sequence)
      now = utc_now_iso()
      record = JobRecord(
        job_id=job_id or generate_job_id(),
        user_id=user_id,
        session_id=request.session_id,
        request=encode_pipeline_request(request),
        status="pending",
        priority=priority,
        created_at=now,
        updated_at=now,
        sequence=sequence,
      )
      try:
        await self._repo.create_job(record)
      except Exception as exc:
        raise QueueError(f"Failed to enqueue job {record.job_id}: {exc}") from exc
      heapq.heappush(self._heap, (-priority, sequence, record.job_id))

    logger.info("Enqueued job %s for session %s (priority=%d)", record.job_id, record.session_id, priority)
    return record.job_id

  async def dequeue(self) -> JobRecord | None:
    """Claim the next eligible pending job, marking it processing."""
    async with self._lock:
      deferred: list[tuple[int, int, str]] = []
      claimed: JobRecord | None = None
      while self._heap:
        entry = heapq.heappop(self._heap)
        record = await self._repo.get_job(entry[2])
        # Cancelled while pending, or otherwise no longer claimable.
        if record is None or record.status != "pending":
          continue
        if record.session_id in self._processing_sessions:
          deferred.append(entry)
          continue
        claimed = await self._transition(record.job_id, "processing", started_at=utc_now_iso())
        break
      for entry in deferred:
        heapq.heappush(self._heap, entry)
      return claimed

  async def mark_processing(self, job_id: str) -> JobRecord:
    async with self._lock:
      return await self._transition(job_id, "processing", started_at=utc_now_iso())

  async def mark_completed(self, job_id: str, output: dict[str, Any]) -> JobRecord:
    async with self._lock:
      return await self._transition(job_id, "completed", output=output, completed_at=utc_now_iso())

  async def mark_failed(self, job_id: str, *, error: str, error_kind: str | None = None) -> JobRecord:
    async with self._lock:
      return await self._transition(job_id, "failed", error=error, error_kind=error_kind, completed_at=utc_now_iso())

  async def mark_cancelled(self, job_id: str) -> JobRecord:
    async with self._lock:
      return await self._transition(job_id, "cancelled", completed_at=utc_now_iso())

  async def request_cancel(self, job_id: str) -> JobRecord:
    """Cancel a pending job now, or flag a processing job for its next stage boundary."""
    async with self._lock:
      record = await self._require(job_id)
      if record.status == "pending":
        return await self._transition(job_id, "cancelled", completed_at=utc_now_iso())
      if record.status == "processing":
        updated = await self._repo.update_job(job_id, cancel_requested=True, updated_at=utc_now_iso())
        logger.info("Cancellation requested for processing job %s", job_id)
        return updated or record
      raise QueueError(f"Job {job_id} is already {record.status}.")

  async def is_cancel_requested(self, job_id: str) -> bool:
    record = await self._repo.get_job(job_id)
    return bool(record and record.cancel_requested)

  async def get(self, job_id: str) -> JobRecord | None:
    return await self._repo.get_job(job_id)

  async def list_for_owner(self, user_id: str) -> list[JobRecord]:
    return await self._repo.list_jobs(user_id=user_id)

  def pending_count(self) -> int:
    return len(self._heap)

  async def _require(self, job_id: str) -> JobRecord:
    record = await self._repo.get_job(job_id)
    if record is None:
      raise QueueError(f"Job {job_id} not found.")
    return record

  async def _transition(self, job_id: str, status: JobStatus, **changes: Any) -> JobRecord:
    """Apply a status change; callers must hold the lock."""
    record = await self._require(job_id)
    if status not in ALLOWED_TRANSITIONS[record.status]:
      raise QueueError(f"Job {job_id} cannot move from {record.status} to {status}.")
    if status == "processing":
      holder = self._processing_sessions.get(record.session_id)
      if holder is not None and holder != job_id:
        raise QueueError(f"Session {record.session_id} already has processing job {holder}.")

    try:
      updated = await self._repo.update_job(job_id, status=status, updated_at=utc_now_iso(), **changes)
    except Exception as exc:
      raise QueueError(f"Failed to update job {job_id}: {exc}") from exc
    finally:
      # Leaving processing frees the session even when the status write fails.
      if status != "processing" and self._processing_sessions.get(record.session_id) == job_id:
        del self._processing_sessions[record.session_id]
    if updated is None:
      raise QueueError(f"Job {job_id} disappeared during update.")

    if status == "processing":
      self._processing_sessions[record.session_id] = job_id
    logger.debug("Job %s moved %s -> %s", job_id, record.status, status)
    return updated
