"""Prompt rendering for the stage agents."""

from __future__ import annotations

import json
from collections.abc import Sequence

from ideaflow.ai.pipeline.contracts import AnalysisInput, BusinessIdea, CritiqueInput, IdeationInput, ResearchInput, ResearchOutput, WritingInput
from ideaflow.services.search.models import SearchResponse

_MAX_SNIPPETS = 30


def _research_context(research: ResearchOutput | None) -> str:
  if research is None:
    return "No research is available; rely on general domain knowledge."
  findings = "\n".join(f"- {finding}" for finding in research.key_findings)
  return f"Research summary:\n{research.summary}\n\nKey findings:\n{findings}"


def _ideas_block(ideas: Sequence[BusinessIdea]) -> str:
  return json.dumps([idea.model_dump(mode="json") for idea in ideas], ensure_ascii=False, indent=2)


def render_query_plan_prompt(input_data: ResearchInput) -> str:
  regions = ", ".join(input_data.regions)
  return (
    f"Plan web searches for new-business research on the topic: {input_data.topic}\n"
    f"Cover these regions: {regions}. Use the local language for regional queries.\n"
    "Return 2-6 concise queries covering market size, trends, competitors and regulation, each tagged with its region."
  )


def render_digest_prompt(topic: str, responses: Sequence[SearchResponse]) -> str:
  lines: list[str] = []
  for response in responses:
    for result in response.results:
      lines.append(f"- [{response.query.gl}] {result.title}: {result.snippet} ({result.link})")
      if len(lines) >= _MAX_SNIPPETS:
        break
  evidence = "\n".join(lines) if lines else "No search results were returned."
  return f"Summarize the market research for: {topic}\n\nSearch results:\n{evidence}\n\nReturn a short summary and 3-8 key findings grounded in the results."


def render_ideation_prompt(input_data: IdeationInput) -> str:
  return (
    f"Propose exactly {input_data.idea_count} distinct new-business ideas for: {input_data.topic}\n\n"
    f"{_research_context(input_data.research)}\n\n"
    f"Use ids idea-1 to idea-{input_data.idea_count}. Titles must be at most 60 characters. "
    "Estimate annual revenue in JPY and rate implementation difficulty as low, medium or high."
  )


def render_critique_prompt(input_data: CritiqueInput) -> str:
  return (
    f"Evaluate these business ideas for: {input_data.topic}\n\n"
    f"{_research_context(input_data.research)}\n\n"
    f"Ideas:\n{_ideas_block(input_data.ideas)}\n\n"
    "Score every idea by id: market_score 0-50 (size, growth, competition) and synergy_score 0-50 (fit with existing assets). Explain briefly."
  )


def render_analysis_prompt(input_data: AnalysisInput) -> str:
  return (
    f"Analyze the selected business idea for: {input_data.topic}\n\n"
    f"Idea:\n{_ideas_block([input_data.idea])}\n\n"
    f"{_research_context(input_data.research)}\n\n"
    "Estimate TAM, PAM and SAM in JPY (SAM <= PAM <= TAM), growth rate, competitors, trends and regulations; "
    "score synergy 0-100 with a breakdown, initiatives and risks; and lay out a phased validation plan with durations in months and budgets."
  )


def render_writing_prompt(input_data: WritingInput) -> str:
  analysis = input_data.analysis.model_dump(mode="json")
  return (
    f"Write a business report for: {input_data.topic}\n\n"
    f"Analysis:\n{json.dumps(analysis, ensure_ascii=False, indent=2)}\n\n"
    "Provide a report title and prose for the sections summary, business_model, market, synergy and validation."
  )
