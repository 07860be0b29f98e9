"""Process-wide wiring: search client, storage, queue, orchestrator and worker."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import TracebackType
from typing import Self

import httpx

from ideaflow.ai.agents import AnalysisAgent, CritiqueAgent, IdeationAgent, ResearchAgent, WritingAgent
from ideaflow.ai.backoff import BackoffPolicy
from ideaflow.ai.errors import RecoveryLimits
from ideaflow.ai.orchestrator import PipelineOrchestrator, StageAgents
from ideaflow.ai.providers.base import AIModel
from ideaflow.ai.providers.openai_chat import OpenAIChatProvider
from ideaflow.config import Settings
from ideaflow.jobs.progress import ProgressPublisher
from ideaflow.jobs.queue import JobQueue
from ideaflow.jobs.worker import JobProcessor, run_worker_loop
from ideaflow.services.search import SearchClient
from ideaflow.storage.checkpoints import CheckpointStore
from ideaflow.storage.checkpoints_repo import InMemoryCheckpointsRepository
from ideaflow.storage.jobs_repo import InMemoryJobsRepository
from ideaflow.storage.reports_repo import InMemoryReportsRepository, ReportsRepository

logger = logging.getLogger(__name__)


def _log_worker_failure(task: asyncio.Task[None]) -> None:
  """Log unexpected failures from the background worker task."""
  if task.cancelled():
    return
  exc = task.exception()
  if exc is not None:
    logger.error("Job worker task failed: %s", exc, exc_info=exc)


@dataclass
class AppContext:
  """Shared services for one process; close it to release the HTTP pool."""

  settings: Settings
  search: SearchClient
  checkpoints: CheckpointStore
  reports: ReportsRepository
  queue: JobQueue
  publisher: ProgressPublisher
  orchestrator: PipelineOrchestrator
  processor: JobProcessor
  _worker_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

  @classmethod
  def create(cls, settings: Settings, *, model: AIModel | None = None, http_client: httpx.AsyncClient | None = None) -> AppContext:
    """Build every service from settings; `model` overrides the configured chat model."""
    search = SearchClient.from_settings(settings, http_client=http_client)
    chat_model = model or OpenAIChatProvider.from_settings(settings).get_model(settings.llm_model)

    checkpoints = CheckpointStore(InMemoryCheckpointsRepository(), retention=settings.checkpoint_retention)
    reports = InMemoryReportsRepository()
    queue = JobQueue(InMemoryJobsRepository())
    publisher = ProgressPublisher()

    agents = StageAgents(
      research=ResearchAgent(model=chat_model, search_client=search),
      ideation=IdeationAgent(model=chat_model),
      critique=CritiqueAgent(model=chat_model),
      analysis=AnalysisAgent(model=chat_model),
      writing=WritingAgent(model=chat_model),
    )
    orchestrator = PipelineOrchestrator(
      agents=agents,
      checkpoints=checkpoints,
      reports=reports,
      publisher=publisher,
      limits=RecoveryLimits(
        max_attempts=settings.stage_max_attempts,
        validation_retries=settings.stage_validation_retries,
        rate_limit_retries=settings.stage_rate_limit_retries,
        max_resumes=settings.stage_max_resumes,
      ),
      backoff=BackoffPolicy(strategy=settings.stage_backoff, base_delay=settings.stage_retry_delay_seconds, max_delay=settings.stage_max_delay_seconds),
      stage_timeout_seconds=settings.stage_timeout_seconds,
      rate_limit_wait_seconds=settings.search_rate_limit_interval_seconds,
      idea_count=settings.idea_count,
    )
    processor = JobProcessor(queue=queue, orchestrator=orchestrator, checkpoints=checkpoints, idea_count=settings.idea_count)
    return cls(
      settings=settings,
      search=search,
      checkpoints=checkpoints,
      reports=reports,
      queue=queue,
      publisher=publisher,
      orchestrator=orchestrator,
      processor=processor,
    )

  async def __aenter__(self) -> Self:
    return self

  async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
    await self.aclose()

  @property
  def worker_running(self) -> bool:
    return self._worker_task is not None and not self._worker_task.done()

  def start_worker(self) -> None:
    """Start polling the queue on the running loop; a second call is a no-op."""
    if self.worker_running:
      return
    loop = asyncio.get_running_loop()
    self._worker_task = loop.create_task(run_worker_loop(self.processor, poll_seconds=self.settings.worker_poll_seconds, batch_size=self.settings.worker_batch_size))
    self._worker_task.add_done_callback(_log_worker_failure)
    logger.info("Job worker loop started.")

  async def stop_worker(self) -> None:
    if self._worker_task is None:
      return
    task = self._worker_task
    self._worker_task = None
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass
    logger.info("Job worker loop stopped.")

  async def aclose(self) -> None:
    await self.stop_worker()
    await self.search.aclose()
