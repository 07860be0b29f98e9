"""Writing agent: assembles the final report."""

from __future__ import annotations

from ideaflow.ai.agents.base import BaseAgent, StageContext, UsageMeter
from ideaflow.ai.agents.prompts import render_writing_prompt
from ideaflow.ai.pipeline.contracts import SECTION_ORDER, SECTION_TITLES, AnalysisOutput, FinalReport, ReportDraft, ReportMetrics, ReportSection, WritingInput
from ideaflow.ai.pipeline.phases import Stage
from ideaflow.utils.ids import generate_nanoid
from ideaflow.utils.time import utc_now

_PROJECTION_YEARS = 3


def build_report_metrics(analysis: AnalysisOutput) -> ReportMetrics:
  """Derive headline numbers from the analysis rather than model prose."""
  return ReportMetrics(
    tam=analysis.market.tam,
    pam=analysis.market.pam,
    sam=analysis.market.sam,
    revenue_projection_3y=analysis.idea.estimated_revenue * _PROJECTION_YEARS,
    synergy_score=analysis.synergy.total_score,
    implementation_difficulty=analysis.idea.implementation_difficulty,
    time_to_market_months=analysis.validation.total_duration_months,
  )


class WritingAgent(BaseAgent[WritingInput, FinalReport]):
  """Turn the analysis into a report with sections in fixed order."""

  name = "Writer"
  stage = Stage.WRITING

  async def _execute(self, input_data: WritingInput, ctx: StageContext, meter: UsageMeter) -> FinalReport:
    draft = await self._generate_structured(render_writing_prompt(input_data), ReportDraft, purpose="write_report", ctx=ctx, meter=meter)
    report_id = generate_nanoid()
    sections = [
      ReportSection(id=f"{report_id}-{section_type.value}", type=section_type, title=SECTION_TITLES[section_type], content=getattr(draft, section_type.value), order=position)
      for position, section_type in enumerate(SECTION_ORDER, start=1)
    ]
    return FinalReport(
      id=report_id,
      session_id=input_data.session_id,
      idea_id=input_data.analysis.idea.id,
      title=draft.title,
      sections=sections,
      metrics=build_report_metrics(input_data.analysis),
      generated_at=utc_now(),
    )
