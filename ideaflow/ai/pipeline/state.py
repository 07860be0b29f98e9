"""Session state owned by the orchestrator for one pipeline run."""

from __future__ import annotations

from datetime import datetime
from typing import Any, assert_never

from pydantic import BaseModel, Field, model_validator

from ideaflow.ai.errors import ErrorKind, OrchestrationError, RecoveryAction
from ideaflow.ai.pipeline.contracts import AnalysisOutput, CritiqueOutput, FinalReport, IdeationOutput, PipelineMetrics, PipelineOptions, ResearchOutput, StageMetrics, StageOutput
from ideaflow.ai.pipeline.phases import STAGE_ORDER, TERMINAL_PHASES, Phase, Stage, stage_for_phase
from ideaflow.utils.time import utc_now


class ErrorRecord(BaseModel):
  """Serializable snapshot of the last classified error."""

  kind: ErrorKind
  message: str
  stage: Stage | None = None
  retryable: bool = False
  recovery_actions: list[RecoveryAction] = Field(default_factory=list)
  retry_count: int = 0
  timestamp: datetime

  @classmethod
  def from_error(cls, error: OrchestrationError) -> ErrorRecord:
    return cls(
      kind=error.kind,
      message=error.message,
      stage=error.stage,
      retryable=error.retryable,
      recovery_actions=list(error.recovery_actions),
      retry_count=error.retry_count,
      timestamp=error.timestamp,
    )


class SessionState(BaseModel):
  """Phase, progress and per-stage outputs for one session.

  Invariants: `current_stage` always matches `phase`; `progress` never decreases;
  a stage output is written once unless the same stage is explicitly retried.
  """

  session_id: str = Field(min_length=1)
  user_id: str | None = None
  topic: str = Field(min_length=1)
  options: PipelineOptions = Field(default_factory=PipelineOptions)
  phase: Phase = Phase.INITIALIZING
  current_stage: Stage | None = None
  progress: float = Field(default=0.0, ge=0, le=100)
  started_at: datetime = Field(default_factory=utc_now)
  updated_at: datetime = Field(default_factory=utc_now)
  research: ResearchOutput | None = None
  ideation: IdeationOutput | None = None
  critique: CritiqueOutput | None = None
  analysis: AnalysisOutput | None = None
  writing: FinalReport | None = None
  stage_metrics: dict[Stage, StageMetrics] = Field(default_factory=dict)
  skipped_stages: list[Stage] = Field(default_factory=list)
  error: ErrorRecord | None = None

  @model_validator(mode="after")
  def _phase_matches_stage(self) -> SessionState:
    expected = stage_for_phase(self.phase)
    if expected != self.current_stage:
      raise ValueError(f"Phase {self.phase.value} requires stage {expected}, got {self.current_stage}.")
    return self

  @property
  def is_terminal(self) -> bool:
    return self.phase in TERMINAL_PHASES

  def output_for(self, stage: Stage) -> StageOutput | None:
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

  def record_output(self, stage: Stage, output: StageOutput, *, retry: bool = False) -> None:
    """Store a validated stage output; refuses to overwrite unless retrying that stage."""
    if self.output_for(stage) is not None and not retry:
      raise ValueError(f"Output for stage {stage.value} is already set.")
    match stage:
      case Stage.RESEARCH:
        self.research = ResearchOutput.model_validate(output)
      case Stage.IDEATION:
        self.ideation = IdeationOutput.model_validate(output)
      case Stage.CRITIQUE:
        self.critique = CritiqueOutput.model_validate(output)
      case Stage.ANALYSIS:
        self.analysis = AnalysisOutput.model_validate(output)
      case Stage.WRITING:
        self.writing = FinalReport.model_validate(output)
      case _:
        assert_never(stage)
    self.touch()

  def enter(self, phase: Phase) -> None:
    """Move to `phase`, keeping the active stage consistent with it."""
    self.phase = phase
    self.current_stage = stage_for_phase(phase)
    self.touch()

  def advance_progress(self, value: float) -> None:
    self.progress = max(self.progress, min(value, 100.0))
    self.touch()

  def touch(self) -> None:
    self.updated_at = utc_now()

  def has_partial_output(self) -> bool:
    return any(self.output_for(stage) is not None for stage in STAGE_ORDER)

  def completed_outputs(self) -> dict[str, Any]:
    """Return the validated outputs keyed by stage name, in stage order."""
    outputs: dict[str, Any] = {}
    for stage in STAGE_ORDER:
      output = self.output_for(stage)
      if output is not None:
        outputs[stage.value] = output.model_dump(mode="json")
    return outputs

  def metrics(self) -> PipelineMetrics:
    """Aggregate per-stage metrics; `tokens_used` is the sum over stages."""
    stages = {stage: self.stage_metrics[stage] for stage in STAGE_ORDER if stage in self.stage_metrics}
    return PipelineMetrics(
      tokens_used=sum(metric.tokens_used for metric in stages.values()),
      latency_ms=sum(metric.latency_ms for metric in stages.values()),
      stages=stages,
    )
