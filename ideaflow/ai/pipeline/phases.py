"""Closed enumerations for pipeline phases and stages."""

from __future__ import annotations

from enum import StrEnum
from typing import Final, assert_never


class Phase(StrEnum):
  """Session phase; each running phase maps to exactly one stage."""

  INITIALIZING = "initializing"
  RESEARCHING = "researching"
  IDEATING = "ideating"
  CRITIQUING = "critiquing"
  ANALYZING = "analyzing"
  WRITING = "writing"
  COMPLETED = "completed"
  ERROR = "error"


class Stage(StrEnum):
  """One of the five fixed pipeline steps."""

  RESEARCH = "research"
  IDEATION = "ideation"
  CRITIQUE = "critique"
  ANALYSIS = "analysis"
  WRITING = "writing"


STAGE_ORDER: Final[tuple[Stage, ...]] = (Stage.RESEARCH, Stage.IDEATION, Stage.CRITIQUE, Stage.ANALYSIS, Stage.WRITING)
TERMINAL_PHASES: Final[frozenset[Phase]] = frozenset({Phase.COMPLETED, Phase.ERROR})

# Progress reached once the stage output has been accepted.
STAGE_PROGRESS: Final[dict[Stage, float]] = {
  Stage.RESEARCH: 20.0,
  Stage.IDEATION: 40.0,
  Stage.CRITIQUE: 60.0,
  Stage.ANALYSIS: 80.0,
  Stage.WRITING: 100.0,
}

# Downstream stages can run without these outputs.
SKIPPABLE_STAGES: Final[frozenset[Stage]] = frozenset({Stage.RESEARCH, Stage.CRITIQUE})


def phase_for_stage(stage: Stage) -> Phase:
  """Return the running phase that corresponds to a stage."""
  match stage:
    case Stage.RESEARCH:
      return Phase.RESEARCHING
    case Stage.IDEATION:
      return Phase.IDEATING
    case Stage.CRITIQUE:
      return Phase.CRITIQUING
    case Stage.ANALYSIS:
      return Phase.ANALYZING
    case Stage.WRITING:
      return Phase.WRITING
    case _:
      assert_never(stage)


def stage_for_phase(phase: Phase) -> Stage | None:
  """Return the active stage for a phase, or None for non-running phases."""
  match phase:
    case Phase.INITIALIZING | Phase.COMPLETED | Phase.ERROR:
      return None
    case Phase.RESEARCHING:
      return Stage.RESEARCH
    case Phase.IDEATING:
      return Stage.IDEATION
    case Phase.CRITIQUING:
      return Stage.CRITIQUE
    case Phase.ANALYZING:
      return Stage.ANALYSIS
    case Phase.WRITING:
      return Stage.WRITING
    case _:
      assert_never(phase)


def next_stage(stage: Stage) -> Stage | None:
  """Return the stage after `stage`, or None when it is the last one."""
  index = STAGE_ORDER.index(stage)
  if index + 1 < len(STAGE_ORDER):
    return STAGE_ORDER[index + 1]
  return None


def phase_after(stage: Stage) -> Phase:
  """Return the phase entered once `stage` has finished."""
  following = next_stage(stage)
  if following is None:
    return Phase.COMPLETED
  return phase_for_stage(following)
