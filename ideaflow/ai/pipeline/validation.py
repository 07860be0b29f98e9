"""Structural checks applied to a stage result before it is accepted."""

from __future__ import annotations

from typing import assert_never

from pydantic import BaseModel, ValidationError

from ideaflow.ai.errors import StageValidationError
from ideaflow.ai.pipeline.contracts import AnalysisOutput, CritiqueOutput, FinalReport, IdeationOutput, PipelineOptions, ResearchOutput, StageOutput
from ideaflow.ai.pipeline.phases import Stage


def _expected_type(stage: Stage) -> type[BaseModel]:
  match stage:
    case Stage.RESEARCH:
      return ResearchOutput
    case Stage.IDEATION:
      return IdeationOutput
    case Stage.CRITIQUE:
      return CritiqueOutput
    case Stage.ANALYSIS:
      return AnalysisOutput
    case Stage.WRITING:
      return FinalReport
    case _:
      assert_never(stage)


def _collect_errors(stage: Stage, output: object, options: PipelineOptions) -> list[str]:
  expected = _expected_type(stage)
  if not isinstance(output, expected):
    return [f"expected {expected.__name__}, got {type(output).__name__}"]

  # Re-validate the dumped payload so mutations after construction are caught too.
  try:
    expected.model_validate(output.model_dump())
  except ValidationError as exc:
    return [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]

  errors: list[str] = []
  if isinstance(output, ResearchOutput):
    if not any(item for item in output.key_findings if item.strip()):
      errors.append("key_findings: at least one non-empty finding is required")
  elif isinstance(output, IdeationOutput):
    if len(output.ideas) != options.idea_count:
      errors.append(f"ideas: expected exactly {options.idea_count}, got {len(output.ideas)}")
  elif isinstance(output, CritiqueOutput):
    if not output.selected_idea.title.strip():
      errors.append("selected_idea.title: must not be blank")
  elif isinstance(output, AnalysisOutput):
    if output.market.sam > output.market.tam:
      errors.append("market.sam: must not exceed tam")
  elif isinstance(output, FinalReport):
    blank = [section.type.value for section in output.sections if not section.content.strip()]
    if blank:
      errors.append(f"sections: blank content in {', '.join(blank)}")
  return errors


def validate_stage_output(stage: Stage, output: StageOutput, options: PipelineOptions) -> None:
  """Raise `StageValidationError` when a stage result is structurally incomplete."""
  errors = _collect_errors(stage, output, options)
  if errors:
    raise StageValidationError(f"{stage.value} output failed validation: {'; '.join(errors)}", stage=stage, errors=errors)
