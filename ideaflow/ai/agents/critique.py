"""Critique agent: scores ideas, ranks them and selects the best one."""

from __future__ import annotations

import logging

from ideaflow.ai.agents.base import BaseAgent, StageContext, UsageMeter
from ideaflow.ai.agents.prompts import render_critique_prompt
from ideaflow.ai.errors import StageValidationError
from ideaflow.ai.pipeline.contracts import CritiqueInput, CritiqueOutput, IdeaEvaluation, IdeaScorecard
from ideaflow.ai.pipeline.phases import Stage

logger = logging.getLogger(__name__)


class CritiqueAgent(BaseAgent[CritiqueInput, CritiqueOutput]):
  """Evaluate every idea and pick the highest total score."""

  name = "Critic"
  stage = Stage.CRITIQUE

  async def _execute(self, input_data: CritiqueInput, ctx: StageContext, meter: UsageMeter) -> CritiqueOutput:
    scorecard = await self._generate_structured(render_critique_prompt(input_data), IdeaScorecard, purpose="score_ideas", ctx=ctx, meter=meter)
    scores = {score.idea_id: score for score in scorecard.scores}

    missing = [idea.id for idea in input_data.ideas if idea.id not in scores]
    if missing:
      raise StageValidationError(f"Critique did not score ideas: {', '.join(missing)}", stage=self.stage, errors=[f"scores: missing {idea_id}" for idea_id in missing])
    extra = set(scores) - {idea.id for idea in input_data.ideas}
    if extra:
      logger.warning("Ignoring scores for unknown ideas: %s", ", ".join(sorted(extra)))

    # Stable sort keeps the ideation order for equal totals.
    ranked = sorted(input_data.ideas, key=lambda idea: scores[idea.id].market_score + scores[idea.id].synergy_score, reverse=True)
    evaluations = [
      IdeaEvaluation(
        idea_id=idea.id,
        idea_title=idea.title,
        market_score=scores[idea.id].market_score,
        synergy_score=scores[idea.id].synergy_score,
        total_score=scores[idea.id].market_score + scores[idea.id].synergy_score,
        rank=rank,
        reasoning=scores[idea.id].reasoning,
      )
      for rank, idea in enumerate(ranked, start=1)
    ]
    return CritiqueOutput(evaluations=evaluations, selected_idea=ranked[0])
