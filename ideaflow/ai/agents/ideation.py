"""Ideation agent: proposes a fixed number of business ideas."""

from __future__ import annotations

from ideaflow.ai.agents.base import BaseAgent, StageContext, UsageMeter
from ideaflow.ai.agents.prompts import render_ideation_prompt
from ideaflow.ai.pipeline.contracts import IdeationInput, IdeationOutput
from ideaflow.ai.pipeline.phases import Stage


class IdeationAgent(BaseAgent[IdeationInput, IdeationOutput]):
  """Generate business ideas from the research context."""

  name = "Ideator"
  stage = Stage.IDEATION

  async def _execute(self, input_data: IdeationInput, ctx: StageContext, meter: UsageMeter) -> IdeationOutput:
    return await self._generate_structured(render_ideation_prompt(input_data), IdeationOutput, purpose="generate_ideas", ctx=ctx, meter=meter)
