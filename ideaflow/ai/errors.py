"""Fault taxonomy, classification and recovery planning for pipeline runs.

Every failure raised inside a stage or the search client is a `PipelineFault` tagged
with an `ErrorKind` at the point where it happened. The classifier turns any exception
into an `OrchestrationError` and the recovery planner picks the actions to apply.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar, assert_never

from pydantic import ValidationError

from ideaflow.ai.pipeline.phases import Stage
from ideaflow.utils.time import utc_now


class ErrorKind(StrEnum):
  STAGE_FAILURE = "stage_failure"
  TIMEOUT = "timeout"
  VALIDATION = "validation"
  NETWORK = "network"
  STORAGE = "storage"
  QUEUE = "queue"
  RATE_LIMIT = "rate_limit"
  CHECKPOINT = "checkpoint"
  UNKNOWN = "unknown"


class RecoveryAction(StrEnum):
  RETRY = "retry"
  RESUME_FROM_CHECKPOINT = "resume_from_checkpoint"
  SKIP_STAGE = "skip_stage"
  SAVE_PARTIAL = "save_partial"
  ABORT = "abort"


class PipelineFault(Exception):
  """Base class for tagged faults raised at the point of failure."""

  kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN
  default_retryable: ClassVar[bool] = False

  def __init__(self, message: str, *, stage: Stage | None = None, retryable: bool | None = None, retry_after: float | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.stage = stage
    self.retryable = self.default_retryable if retryable is None else retryable
    # Seconds the upstream asked us to wait, from a Retry-After header.
    self.retry_after = retry_after


class StageFailedError(PipelineFault):
  """A stage could not produce output (model refused, provider error, missing input)."""

  kind = ErrorKind.STAGE_FAILURE
  default_retryable = True


class StageTimeoutError(PipelineFault):
  kind = ErrorKind.TIMEOUT
  default_retryable = True


class StageValidationError(PipelineFault):
  """A stage produced output that failed structural validation."""

  kind = ErrorKind.VALIDATION
  default_retryable = True

  def __init__(self, message: str, *, stage: Stage | None = None, errors: list[str] | None = None) -> None:
    super().__init__(message, stage=stage)
    self.errors = list(errors or [])


class NetworkFault(PipelineFault):
  kind = ErrorKind.NETWORK
  default_retryable = True


class StorageError(PipelineFault):
  kind = ErrorKind.STORAGE


class QueueError(PipelineFault):
  kind = ErrorKind.QUEUE


class RateLimitExceededError(PipelineFault):
  kind = ErrorKind.RATE_LIMIT
  default_retryable = True


class CheckpointError(PipelineFault):
  kind = ErrorKind.CHECKPOINT


def parse_retry_after(value: str | None) -> float | None:
  """Parse a delta-seconds Retry-After value; HTTP dates and garbage yield None."""
  if value is None:
    return None
  try:
    seconds = float(value.strip())
  except ValueError:
    return None
  return seconds if seconds >= 0 else None


def recovery_actions_for(kind: ErrorKind) -> tuple[RecoveryAction, ...]:
  """Return the ordered candidate actions for an error kind."""
  match kind:
    case ErrorKind.STAGE_FAILURE | ErrorKind.TIMEOUT | ErrorKind.NETWORK:
      return (RecoveryAction.RETRY, RecoveryAction.RESUME_FROM_CHECKPOINT, RecoveryAction.SKIP_STAGE, RecoveryAction.SAVE_PARTIAL, RecoveryAction.ABORT)
    case ErrorKind.VALIDATION:
      return (RecoveryAction.RETRY, RecoveryAction.ABORT)
    case ErrorKind.RATE_LIMIT:
      return (RecoveryAction.RETRY, RecoveryAction.RESUME_FROM_CHECKPOINT, RecoveryAction.SAVE_PARTIAL)
    case ErrorKind.STORAGE | ErrorKind.CHECKPOINT:
      return (RecoveryAction.SAVE_PARTIAL, RecoveryAction.ABORT)
    case ErrorKind.QUEUE | ErrorKind.UNKNOWN:
      return (RecoveryAction.ABORT,)
    case _:
      assert_never(kind)


class OrchestrationError(RuntimeError):
  """Classified pipeline failure; raised to callers when a run aborts."""

  def __init__(
    self,
    kind: ErrorKind,
    message: str,
    *,
    stage: Stage | None = None,
    retryable: bool = False,
    recovery_actions: tuple[RecoveryAction, ...] | None = None,
    timestamp: datetime | None = None,
    retry_count: int = 0,
    retry_after: float | None = None,
    logs: list[str] | None = None,
  ) -> None:
    super().__init__(message)
    self.kind = kind
    self.message = message
    self.stage = stage
    self.recovery_actions = recovery_actions or recovery_actions_for(kind)
    # Only kinds whose policy includes retry can ever be flagged retryable.
    self.retryable = retryable and RecoveryAction.RETRY in self.recovery_actions
    self.timestamp = timestamp or utc_now()
    self.retry_count = retry_count
    self.retry_after = retry_after
    self.logs = list(logs or [])
    # Session state at abort time, attached by the orchestrator.
    self.session_state: Any = None

  def to_public_dict(self) -> dict[str, Any]:
    """Return the caller-safe view: kind and message, never internals."""
    return {"kind": self.kind.value, "message": self.message, "stage": self.stage.value if self.stage else None}

  def __repr__(self) -> str:
    return f"OrchestrationError(kind={self.kind.value!r}, stage={self.stage!r}, message={self.message!r})"


class ErrorClassifier:
  """Map any exception raised during a stage to an `OrchestrationError`."""

  def classify(self, exc: BaseException, *, stage: Stage | None, retry_count: int = 0) -> OrchestrationError:
    if isinstance(exc, OrchestrationError):
      return exc

    retry_after: float | None = None
    if isinstance(exc, PipelineFault):
      kind = exc.kind
      retryable = exc.retryable
      message = exc.message
      stage = exc.stage or stage
      retry_after = exc.retry_after
    elif isinstance(exc, TimeoutError):
      kind = ErrorKind.TIMEOUT
      retryable = True
      message = str(exc) or "Operation timed out."
    elif isinstance(exc, ValidationError):
      kind = ErrorKind.VALIDATION
      retryable = True
      message = f"Output failed validation with {exc.error_count()} error(s)."
    else:
      kind = ErrorKind.UNKNOWN
      retryable = False
      message = f"{type(exc).__name__}: {exc}"

    return OrchestrationError(kind, message, stage=stage, retryable=retryable, retry_count=retry_count, retry_after=retry_after)


@dataclass(frozen=True)
class RecoveryLimits:
  """Per-kind bounds applied when planning recovery."""

  max_attempts: int = 3
  validation_retries: int = 1
  rate_limit_retries: int = 10
  max_resumes: int = 1

  def attempt_limit(self, kind: ErrorKind) -> int:
    """Return the total attempts allowed for a stage failing with `kind`."""
    if kind is ErrorKind.VALIDATION:
      return 1 + self.validation_retries
    if kind is ErrorKind.RATE_LIMIT:
      return 1 + self.rate_limit_retries
    return self.max_attempts


@dataclass(frozen=True)
class RecoveryContext:
  """Preconditions the orchestrator reports when asking for a plan."""

  attempts: int
  resumes_used: int
  has_checkpoint: bool
  has_partial_output: bool
  can_skip: bool
  partial_saved: bool = False


def plan_recovery(error: OrchestrationError, context: RecoveryContext, limits: RecoveryLimits) -> list[RecoveryAction]:
  """Return the actions to apply, in order, for a classified error.

  The first candidate whose precondition holds wins. `save_partial` is not terminal, so
  when it applies the plan continues to the next applicable action. Kinds without an
  `abort` candidate (rate limits) fall back to another retry once their budget and
  resumes are spent; only a non-retryable fault of such a kind aborts.
  """
  plan: list[RecoveryAction] = []
  for action in error.recovery_actions:
    match action:
      case RecoveryAction.RETRY:
        if error.retryable and context.attempts < limits.attempt_limit(error.kind):
          return [action]
      case RecoveryAction.RESUME_FROM_CHECKPOINT:
        if context.has_checkpoint and context.resumes_used < limits.max_resumes:
          return [action]
      case RecoveryAction.SKIP_STAGE:
        if context.can_skip:
          return [action]
      case RecoveryAction.SAVE_PARTIAL:
        if context.has_partial_output and not context.partial_saved:
          plan.append(action)
      case RecoveryAction.ABORT:
        plan.append(action)
        return plan
      case _:
        assert_never(action)
  if RecoveryAction.ABORT not in error.recovery_actions and error.retryable:
    plan.append(RecoveryAction.RETRY)
    return plan
  plan.append(RecoveryAction.ABORT)
  return plan
