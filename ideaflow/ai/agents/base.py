"""Base class for pipeline stage agents."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from ideaflow.ai.errors import StageValidationError
from ideaflow.ai.pipeline.contracts import StageMetrics
from ideaflow.ai.pipeline.phases import Stage
from ideaflow.ai.providers.base import AIModel, total_tokens

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")
ResponseT = TypeVar("ResponseT", bound=BaseModel)
UsageSink = Callable[[dict[str, Any]], None] | None


@dataclass(frozen=True)
class StageContext:
  """Identifiers passed to every stage run."""

  session_id: str
  user_id: str | None = None
  attempt: int = 1


@dataclass
class UsageMeter:
  """Accumulates model usage for one stage run."""

  tokens: int = 0
  calls: int = 0

  def record(self, usage: dict[str, int] | None) -> None:
    self.calls += 1
    self.tokens += total_tokens(usage)


@dataclass(frozen=True)
class StageResult(Generic[OutputT]):
  output: OutputT
  metrics: StageMetrics


class BaseAgent(ABC, Generic[InputT, OutputT]):
  """Stage agent wrapping model calls; subclasses implement `_execute`."""

  name: str
  stage: Stage

  def __init__(self, *, model: AIModel, usage_sink: UsageSink = None) -> None:
    self._model = model
    self._usage_sink = usage_sink

  async def run(self, input_data: InputT, ctx: StageContext) -> StageResult[OutputT]:
    """Run the stage and report token usage and latency alongside its output."""
    started = time.perf_counter()
    meter = UsageMeter()
    output = await self._execute(input_data, ctx, meter)
    latency_ms = (time.perf_counter() - started) * 1000
    logger.info("%s finished for session %s in %.0fms using %d tokens over %d call(s)", self.name, ctx.session_id, latency_ms, meter.tokens, meter.calls)
    return StageResult(output=output, metrics=StageMetrics(tokens_used=meter.tokens, latency_ms=latency_ms, model_calls=meter.calls))

  @abstractmethod
  async def _execute(self, input_data: InputT, ctx: StageContext, meter: UsageMeter) -> OutputT:
    """Produce the stage output."""

  async def _generate_structured(self, prompt: str, response_model: type[ResponseT], *, purpose: str, ctx: StageContext, meter: UsageMeter) -> ResponseT:
    """Call the model with the response model's JSON schema and validate the reply."""
    response = await self._model.generate_structured(prompt, response_model.model_json_schema())
    meter.record(response.usage)
    self._record_usage(purpose=purpose, ctx=ctx, usage=response.usage)
    try:
      return response_model.model_validate(response.content)
    except ValidationError as exc:
      errors = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]
      raise StageValidationError(f"{self.name} {purpose} response did not match {response_model.__name__}", stage=self.stage, errors=errors) from exc

  def _record_usage(self, *, purpose: str, ctx: StageContext, usage: dict[str, int] | None) -> None:
    if not usage or not self._usage_sink:
      return
    payload = {"model": getattr(self._model, "name", "unknown"), "agent": self.name, "purpose": purpose, "session_id": ctx.session_id, "attempt": ctx.attempt, **usage}
    self._usage_sink(payload)
