"""Msgspec request models decoded at the job queue boundary."""

from __future__ import annotations

from typing import Any

import msgspec

from ideaflow.ai.pipeline.contracts import PipelineOptions, PipelineStruct


class PipelineOptionsStruct(PipelineStruct):
  max_results: int | None = None
  regions: list[str] | None = None
  skip_stages: list[str] | None = None
  idea_count: int | None = None


class PipelineRequestStruct(PipelineStruct):
  """Pipeline input carried on a job: `{topic, sessionId, options}`."""

  topic: str
  session_id: str
  options: PipelineOptionsStruct | None = None

  def __post_init__(self) -> None:
    self.topic = self.topic.strip()
    if not self.topic:
      raise ValueError("topic must be a non-empty string.")
    if not self.session_id.strip():
      raise ValueError("session_id must be a non-empty string.")

  def to_options(self, *, default_idea_count: int | None = None) -> PipelineOptions:
    """Convert the wire options into validated pipeline options; a request idea count wins over the default."""
    values: dict[str, Any] = {}
    if self.options is not None:
      values = {key: value for key, value in msgspec.structs.asdict(self.options).items() if value is not None}
    if default_idea_count is not None:
      values.setdefault("idea_count", default_idea_count)
    return PipelineOptions.model_validate(values)


def decode_pipeline_request(payload: dict[str, Any] | bytes) -> PipelineRequestStruct:
  """Decode and validate a pipeline request from JSON bytes or a builtin mapping."""
  try:
    if isinstance(payload, bytes):
      return msgspec.json.decode(payload, type=PipelineRequestStruct)
    return msgspec.convert(payload, type=PipelineRequestStruct)
  except msgspec.ValidationError as exc:
    raise ValueError(f"Invalid pipeline request: {exc}") from exc


def encode_pipeline_request(request: PipelineRequestStruct) -> dict[str, Any]:
  """Return the builtin form stored on job records."""
  return msgspec.to_builtins(request)
