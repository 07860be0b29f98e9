"""Analysis agent: market, synergy and validation breakdown for the selected idea."""

from __future__ import annotations

from ideaflow.ai.agents.base import BaseAgent, StageContext, UsageMeter
from ideaflow.ai.agents.prompts import render_analysis_prompt
from ideaflow.ai.pipeline.contracts import AnalysisDraft, AnalysisInput, AnalysisOutput
from ideaflow.ai.pipeline.phases import Stage


class AnalysisAgent(BaseAgent[AnalysisInput, AnalysisOutput]):
  name = "Analyst"
  stage = Stage.ANALYSIS

  async def _execute(self, input_data: AnalysisInput, ctx: StageContext, meter: UsageMeter) -> AnalysisOutput:
    draft = await self._generate_structured(render_analysis_prompt(input_data), AnalysisDraft, purpose="analyze_idea", ctx=ctx, meter=meter)
    return AnalysisOutput(idea=input_data.idea, market=draft.market, synergy=draft.synergy, validation=draft.validation)
