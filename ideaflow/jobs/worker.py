"""Background processor for queued pipeline jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ideaflow.ai.errors import CheckpointError, ErrorClassifier, ErrorKind, OrchestrationError, RecoveryAction
from ideaflow.ai.orchestrator import CancelCheck, PipelineOrchestrator
from ideaflow.ai.pipeline.requests import decode_pipeline_request
from ideaflow.ai.pipeline.state import SessionState
from ideaflow.jobs.models import JobRecord
from ideaflow.jobs.progress import PipelineCancelledError
from ideaflow.jobs.queue import JobQueue
from ideaflow.storage.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)


class JobProcessor:
  """Runs claimed jobs through the orchestrator and records their outcome."""

  def __init__(self, *, queue: JobQueue, orchestrator: PipelineOrchestrator, checkpoints: CheckpointStore, idea_count: int = 5, classifier: ErrorClassifier | None = None) -> None:
    self._queue = queue
    self._orchestrator = orchestrator
    self._checkpoints = checkpoints
    self._idea_count = idea_count
    self._classifier = classifier or ErrorClassifier()

  async def process_queue(self, limit: int = 2) -> list[JobRecord]:
    """Claim up to `limit` jobs and run them concurrently; returns the records that were stored."""
    claimed: list[JobRecord] = []
    for _ in range(limit):
      job = await self._queue.dequeue()
      if job is None:
        break
      claimed.append(job)
    if not claimed:
      return []
    results = await asyncio.gather(*(self.process_job(job) for job in claimed), return_exceptions=True)
    records: list[JobRecord] = []
    for job, result in zip(claimed, results, strict=True):
      if isinstance(result, BaseException):
        if not isinstance(result, Exception):
          raise result
        logger.error("Job %s could not record its outcome: %s", job.job_id, result, exc_info=result)
        continue
      records.append(result)
    return records

  async def process_job(self, job: JobRecord) -> JobRecord:
    """Resume the job's session when a checkpoint exists, otherwise start it."""
    job_id = job.job_id

    async def _should_cancel() -> bool:
      return await self._queue.is_cancel_requested(job_id)

    try:
      state = await self._run(job, _should_cancel)
    except PipelineCancelledError:
      logger.info("Job %s cancelled", job_id)
      return await self._queue.mark_cancelled(job_id)
    except OrchestrationError as exc:
      logger.error("Job %s failed: %s", job_id, exc.message)
      return await self._queue.mark_failed(job_id, error=f"{exc.kind.value}: {exc.message}", error_kind=exc.kind.value)
    except Exception as exc:
      error = self._classifier.classify(exc, stage=None)
      logger.error("Job %s failed outside the pipeline: %s", job_id, error.message, exc_info=True)
      return await self._queue.mark_failed(job_id, error=f"{error.kind.value}: {error.message}", error_kind=error.kind.value)

    return await self._queue.mark_completed(job_id, self._build_output(state))

  async def _run(self, job: JobRecord, should_cancel: CancelCheck) -> SessionState:
    try:
      request = decode_pipeline_request(job.request)
    except ValueError as exc:
      raise OrchestrationError(ErrorKind.VALIDATION, str(exc), recovery_actions=(RecoveryAction.ABORT,)) from exc
    try:
      checkpoint = await self._checkpoints.latest(request.session_id)
    except CheckpointError as exc:
      raise self._classifier.classify(exc, stage=None) from exc

    if checkpoint is not None:
      logger.info("Job %s resuming session %s", job.job_id, request.session_id)
      return await self._orchestrator.resume(request.session_id, should_cancel=should_cancel)

    options = request.to_options(default_idea_count=self._idea_count)
    return await self._orchestrator.start(request.session_id, request.topic, options, user_id=job.user_id, should_cancel=should_cancel)

  @staticmethod
  def _build_output(state: SessionState) -> dict[str, Any]:
    return {
      "report_id": state.writing.id if state.writing else None,
      "session_id": state.session_id,
      "metrics": state.metrics().model_dump(mode="json"),
      "skipped_stages": [stage.value for stage in state.skipped_stages],
    }


async def run_worker_loop(processor: JobProcessor, *, poll_seconds: float = 2.0, batch_size: int = 2) -> None:
  """Poll the queue forever; cancel the task to stop."""
  while True:
    try:
      await processor.process_queue(limit=batch_size)
    except Exception as exc:  # noqa: BLE001
      logger.error("Job worker loop failed: %s", exc, exc_info=True)
    await asyncio.sleep(poll_seconds)
