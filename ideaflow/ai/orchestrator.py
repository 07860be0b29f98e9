"""Orchestration for the five-stage research-to-report pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, assert_never

from ideaflow.ai.agents.base import BaseAgent, StageContext, StageResult
from ideaflow.ai.backoff import BackoffPolicy
from ideaflow.ai.errors import CheckpointError, ErrorClassifier, ErrorKind, OrchestrationError, RecoveryAction, RecoveryContext, RecoveryLimits, StageFailedError, StageTimeoutError, StorageError, plan_recovery
from ideaflow.ai.pipeline.contracts import AnalysisInput, CritiqueInput, IdeationInput, PipelineOptions, ResearchInput, WritingInput
from ideaflow.ai.pipeline.phases import SKIPPABLE_STAGES, STAGE_PROGRESS, Phase, Stage, phase_after
from ideaflow.ai.pipeline.state import ErrorRecord, SessionState
from ideaflow.ai.pipeline.validation import validate_stage_output
from ideaflow.jobs.progress import PipelineCancelledError, ProgressEvent, ProgressEventType, ProgressPublisher
from ideaflow.storage.checkpoints import Checkpoint, CheckpointStore
from ideaflow.storage.reports_repo import ReportKind, ReportRecord, ReportsRepository
from ideaflow.utils.ids import generate_nanoid
from ideaflow.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], Awaitable[bool]] | None
AnyAgent = BaseAgent[Any, Any]


@dataclass(frozen=True)
class StageAgents:
  """One agent per pipeline stage."""

  research: AnyAgent
  ideation: AnyAgent
  critique: AnyAgent
  analysis: AnyAgent
  writing: AnyAgent

  def for_stage(self, stage: Stage) -> AnyAgent:
    match stage:
      case Stage.RESEARCH:
        return self.research
      case Stage.IDEATION:
        return self.ideation
      case Stage.CRITIQUE:
        return self.critique
      case Stage.ANALYSIS:
        return self.analysis
      case Stage.WRITING:
        return self.writing
      case _:
        assert_never(stage)


@dataclass
class _RunContext:
  """Mutable bookkeeping for one start/resume call."""

  state: SessionState
  should_cancel: CancelCheck = None
  attempts: Counter[Stage] = field(default_factory=Counter)
  resumes_used: int = 0
  partial_saved: set[Stage] = field(default_factory=set)
  logs: list[str] = field(default_factory=list)


class PipelineOrchestrator:
  """Drives a session through research, ideation, critique, analysis and writing.

  Each accepted stage output is validated, stored once on the session state, checkpointed
  and announced through the progress publisher before the next stage begins. Failures are
  classified and handled through the recovery plan; an abort raises `OrchestrationError`.
  """

  def __init__(
    self,
    *,
    agents: StageAgents,
    checkpoints: CheckpointStore,
    reports: ReportsRepository,
    publisher: ProgressPublisher | None = None,
    classifier: ErrorClassifier | None = None,
    limits: RecoveryLimits | None = None,
    backoff: BackoffPolicy | None = None,
    stage_timeout_seconds: float = 300.0,
    rate_limit_wait_seconds: float = 60.0,
    idea_count: int = 5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._agents = agents
    self._checkpoints = checkpoints
    self._reports = reports
    self._publisher = publisher or ProgressPublisher()
    self._classifier = classifier or ErrorClassifier()
    self._limits = limits or RecoveryLimits()
    self._backoff = backoff or BackoffPolicy(strategy="exponential", base_delay=1.0, max_delay=30.0)
    self._stage_timeout_seconds = stage_timeout_seconds
    self._rate_limit_wait_seconds = rate_limit_wait_seconds
    self._idea_count = idea_count
    self._sleep = sleep

  @property
  def publisher(self) -> ProgressPublisher:
    return self._publisher

  async def start(self, session_id: str, topic: str, options: PipelineOptions | None = None, *, user_id: str | None = None, should_cancel: CancelCheck = None) -> SessionState:
    """Run a new session from the first stage."""
    topic = topic.strip()
    if not topic:
      raise OrchestrationError(ErrorKind.VALIDATION, "topic must be a non-empty string.", recovery_actions=(RecoveryAction.ABORT,))

    state = SessionState(session_id=session_id, user_id=user_id, topic=topic, options=options or PipelineOptions(idea_count=self._idea_count))
    ctx = _RunContext(state=state, should_cancel=should_cancel)
    logger.info("Starting pipeline session %s for topic %r", session_id, topic)
    await self._emit(ctx, ProgressEventType.PHASE_CHANGE, message="Pipeline initialized")
    return await self._run(ctx)

  async def resume(self, session_id: str, *, should_cancel: CancelCheck = None) -> SessionState:
    """Continue a session from its latest checkpoint."""
    try:
      checkpoint = await self._checkpoints.latest(session_id)
    except CheckpointError as exc:
      raise self._classifier.classify(exc, stage=None) from exc
    if checkpoint is None:
      raise OrchestrationError(ErrorKind.CHECKPOINT, f"No checkpoint found for session {session_id}.")

    state = checkpoint.state.model_copy(deep=True)
    if state.phase is Phase.COMPLETED:
      logger.info("Session %s already completed; nothing to resume", session_id)
      return state

    ctx = _RunContext(state=state, should_cancel=should_cancel)
    logger.info("Resuming session %s at phase %s from checkpoint %s", session_id, state.phase.value, checkpoint.checkpoint_id)
    await self._emit(ctx, ProgressEventType.PHASE_CHANGE, message=f"Resumed from checkpoint {checkpoint.checkpoint_id}")
    return await self._run(ctx)

  async def _run(self, ctx: _RunContext) -> SessionState:
    if ctx.state.phase is Phase.INITIALIZING:
      ctx.state.enter(Phase.RESEARCHING)
      await self._emit(ctx, ProgressEventType.PHASE_CHANGE)

    while (stage := ctx.state.current_stage) is not None:
      await self._check_cancel(ctx)
      try:
        await self._run_stage(ctx, stage)
      except (PipelineCancelledError, OrchestrationError):
        raise
      except Exception as exc:
        await self._recover(ctx, stage, exc)

    logger.info("Pipeline session %s completed with %d tokens", ctx.state.session_id, ctx.state.metrics().tokens_used)
    return ctx.state

  async def _run_stage(self, ctx: _RunContext, stage: Stage) -> None:
    state = ctx.state
    if state.output_for(stage) is not None:
      raise CheckpointError(f"Session {state.session_id} is at stage {stage.value} but its output is already recorded.", stage=stage)

    ctx.attempts[stage] += 1
    attempt = ctx.attempts[stage]
    await self._emit(ctx, ProgressEventType.STAGE_START, stage=stage, message=f"Starting {stage.value} (attempt {attempt})")

    result = await self._execute_stage(ctx, stage, attempt)
    validate_stage_output(stage, result.output, state.options)
    state.record_output(stage, result.output, retry=attempt > 1)
    state.stage_metrics[stage] = result.metrics
    state.error = None
    ctx.logs.append(f"{stage.value} accepted after {attempt} attempt(s)")
    await self._complete_stage(ctx, stage)

  async def _execute_stage(self, ctx: _RunContext, stage: Stage, attempt: int) -> StageResult[Any]:
    agent = self._agents.for_stage(stage)
    input_data = self._build_input(ctx.state, stage)
    stage_ctx = StageContext(session_id=ctx.state.session_id, user_id=ctx.state.user_id, attempt=attempt)
    try:
      async with asyncio.timeout(self._stage_timeout_seconds):
        return await agent.run(input_data, stage_ctx)
    except TimeoutError as exc:
      raise StageTimeoutError(f"{stage.value} exceeded {self._stage_timeout_seconds}s", stage=stage) from exc

  def _build_input(self, state: SessionState, stage: Stage) -> Any:
    """Assemble a stage's input from prior outputs."""
    match stage:
      case Stage.RESEARCH:
        return ResearchInput(topic=state.topic, max_results=state.options.max_results, regions=state.options.regions)
      case Stage.IDEATION:
        return IdeationInput(topic=state.topic, idea_count=state.options.idea_count, research=state.research)
      case Stage.CRITIQUE:
        if state.ideation is None:
          raise StageFailedError("Critique requires ideation output.", stage=stage, retryable=False)
        return CritiqueInput(topic=state.topic, ideas=state.ideation.ideas, research=state.research)
      case Stage.ANALYSIS:
        if state.critique is not None:
          idea = state.critique.selected_idea
        elif state.ideation is not None and Stage.CRITIQUE in state.skipped_stages:
          idea = state.ideation.ideas[0]
        else:
          raise StageFailedError("Analysis requires a selected idea.", stage=stage, retryable=False)
        return AnalysisInput(topic=state.topic, idea=idea, research=state.research)
      case Stage.WRITING:
        if state.analysis is None:
          raise StageFailedError("Writing requires analysis output.", stage=stage, retryable=False)
        return WritingInput(session_id=state.session_id, topic=state.topic, analysis=state.analysis)
      case _:
        assert_never(stage)

  async def _complete_stage(self, ctx: _RunContext, stage: Stage, *, skipped: bool = False) -> None:
    """Advance past `stage`: persist the final report, move phase, checkpoint, then announce."""
    state = ctx.state
    if stage is Stage.WRITING and state.writing is not None:
      await self._save_report(state, "final", state.writing.model_dump(mode="json"), report_id=state.writing.id)

    following = phase_after(stage)
    state.enter(following)
    state.advance_progress(STAGE_PROGRESS[stage])
    checkpoint_id = await self._checkpoints.save(state)

    verb = "skipped" if skipped else "completed"
    await self._emit(ctx, ProgressEventType.STAGE_COMPLETE, stage=stage, message=f"{stage.value} {verb}; checkpoint {checkpoint_id}")
    await self._emit(ctx, ProgressEventType.PROGRESS)
    await self._emit(ctx, ProgressEventType.PHASE_CHANGE)
    if following is Phase.COMPLETED:
      await self._emit(ctx, ProgressEventType.COMPLETED, message=f"Report {state.writing.id if state.writing else 'n/a'} ready")

  async def _recover(self, ctx: _RunContext, stage: Stage, exc: Exception) -> None:
    """Classify a failure and apply the recovery plan; raises when the plan aborts."""
    error = self._classifier.classify(exc, stage=stage, retry_count=ctx.attempts[stage])
    state = ctx.state
    state.error = ErrorRecord.from_error(error)
    state.touch()
    ctx.logs.append(f"{stage.value} failed ({error.kind.value}): {error.message}")
    await self._emit(ctx, ProgressEventType.ERROR, stage=stage, message=error.message, error=error.to_public_dict())

    checkpoint: Checkpoint | None = None
    if RecoveryAction.RESUME_FROM_CHECKPOINT in error.recovery_actions:
      checkpoint = await self._latest_checkpoint_or_none(state.session_id)

    plan = plan_recovery(
      error,
      RecoveryContext(
        attempts=ctx.attempts[stage],
        resumes_used=ctx.resumes_used,
        has_checkpoint=checkpoint is not None,
        has_partial_output=state.has_partial_output(),
        can_skip=stage in state.options.skip_stages and stage in SKIPPABLE_STAGES,
        partial_saved=stage in ctx.partial_saved,
      ),
      self._limits,
    )
    logger.warning("Stage %s failed for session %s (%s: %s); recovery plan: %s", stage.value, state.session_id, error.kind.value, error.message, ", ".join(action.value for action in plan))

    for action in plan:
      match action:
        case RecoveryAction.RETRY:
          await self._retry(ctx, stage, error)
        case RecoveryAction.RESUME_FROM_CHECKPOINT:
          if checkpoint is not None:
            await self._resume_from(ctx, checkpoint)
        case RecoveryAction.SKIP_STAGE:
          await self._skip(ctx, stage)
        case RecoveryAction.SAVE_PARTIAL:
          await self._save_partial(ctx, stage)
        case RecoveryAction.ABORT:
          await self._abort(ctx, error)
        case _:
          assert_never(action)

  def _retry_delay(self, ctx: _RunContext, stage: Stage, error: OrchestrationError) -> float:
    """Rate limits wait out the upstream window; everything else backs off per attempt."""
    if error.kind is ErrorKind.RATE_LIMIT:
      return error.retry_after if error.retry_after is not None else self._rate_limit_wait_seconds
    return self._backoff.delay_for(ctx.attempts[stage])

  async def _retry(self, ctx: _RunContext, stage: Stage, error: OrchestrationError) -> None:
    delay = self._retry_delay(ctx, stage, error)
    await self._emit(ctx, ProgressEventType.RECOVERY, stage=stage, message=f"Retrying {stage.value} in {delay:.2f}s after {error.kind.value}")
    await self._sleep(delay)

  async def _resume_from(self, ctx: _RunContext, checkpoint: Checkpoint) -> None:
    restored = checkpoint.state.model_copy(deep=True)
    restored.progress = max(restored.progress, ctx.state.progress)
    restored.error = ctx.state.error
    ctx.state = restored
    ctx.resumes_used += 1
    if restored.current_stage is not None:
      ctx.attempts[restored.current_stage] = 0
    await self._emit(ctx, ProgressEventType.RECOVERY, message=f"Resumed from checkpoint {checkpoint.checkpoint_id}")

  async def _skip(self, ctx: _RunContext, stage: Stage) -> None:
    ctx.state.skipped_stages.append(stage)
    ctx.logs.append(f"{stage.value} skipped")
    await self._emit(ctx, ProgressEventType.RECOVERY, stage=stage, message=f"Skipping {stage.value}")
    try:
      await self._complete_stage(ctx, stage, skipped=True)
    except Exception as exc:
      await self._recover(ctx, stage, exc)

  async def _save_partial(self, ctx: _RunContext, stage: Stage) -> None:
    state = ctx.state
    payload = {
      "topic": state.topic,
      "phase": state.phase.value,
      "outputs": state.completed_outputs(),
      "skipped_stages": [stage.value for stage in state.skipped_stages],
      "metrics": state.metrics().model_dump(mode="json"),
      "error": state.error.model_dump(mode="json") if state.error else None,
    }
    # Partial-save failures are logged only; the original error keeps driving the plan.
    try:
      report_id = await self._save_report(state, "partial", payload)
    except Exception:
      logger.error("Failed to save partial report for session %s", state.session_id, exc_info=True)
      return
    ctx.partial_saved.add(stage)
    ctx.logs.append(f"partial report {report_id} saved")
    await self._emit(ctx, ProgressEventType.RECOVERY, message=f"Partial report {report_id} saved")

  async def _abort(self, ctx: _RunContext, error: OrchestrationError) -> None:
    state = ctx.state
    state.enter(Phase.ERROR)
    state.error = ErrorRecord.from_error(error)
    error.logs = list(ctx.logs)
    error.session_state = state
    logger.error("Pipeline session %s aborted at %s: %s", state.session_id, error.stage.value if error.stage else "n/a", error.message)
    await self._emit(ctx, ProgressEventType.PHASE_CHANGE, message="Pipeline aborted", error=error.to_public_dict())
    raise error

  async def _save_report(self, state: SessionState, kind: ReportKind, payload: dict[str, Any], *, report_id: str | None = None) -> str:
    record = ReportRecord(report_id=report_id or generate_nanoid(), session_id=state.session_id, user_id=state.user_id, kind=kind, payload=payload, created_at=utc_now_iso())
    try:
      await self._reports.save_report(record)
    except Exception as exc:
      raise StorageError(f"Failed to save {kind} report for session {state.session_id}: {exc}") from exc
    return record.report_id

  async def _latest_checkpoint_or_none(self, session_id: str) -> Checkpoint | None:
    try:
      return await self._checkpoints.latest(session_id)
    except CheckpointError as exc:
      logger.warning("Checkpoint lookup failed for session %s: %s", session_id, exc)
      return None

  async def _check_cancel(self, ctx: _RunContext) -> None:
    if ctx.should_cancel is None or not await ctx.should_cancel():
      return
    logger.info("Session %s cancelled at phase %s", ctx.state.session_id, ctx.state.phase.value)
    await self._emit(ctx, ProgressEventType.PHASE_CHANGE, message="Pipeline cancelled")
    raise PipelineCancelledError(f"Session {ctx.state.session_id} was cancelled.")

  async def _emit(self, ctx: _RunContext, event_type: ProgressEventType, *, stage: Stage | None = None, message: str | None = None, error: dict[str, Any] | None = None) -> None:
    state = ctx.state
    event = ProgressEvent(type=event_type, session_id=state.session_id, progress=state.progress, phase=state.phase, stage=stage or state.current_stage, message=message, error=error)
    await self._publisher.publish(event)
