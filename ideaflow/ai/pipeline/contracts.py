"""Shared data contracts for the pipeline stages."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Final, Literal

import msgspec
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ideaflow.ai.pipeline.phases import SKIPPABLE_STAGES, Stage

Difficulty = Literal["low", "medium", "high"]

# Region code -> (geography locale, language locale) for search queries.
REGION_LOCALES: Final[dict[str, tuple[str, str]]] = {
  "jp": ("jp", "ja"),
  "us": ("us", "en"),
  "uk": ("uk", "en"),
  "de": ("de", "de"),
  "global": ("us", "en"),
}


class PipelineStruct(msgspec.Struct, kw_only=True, forbid_unknown_fields=True, rename="camel"):
  """Base msgspec struct for payloads decoded at the queue boundary; wire fields are camelCase."""


class PipelineOptions(BaseModel):
  """Per-session knobs supplied with the pipeline input."""

  max_results: int = Field(default=10, ge=1, le=100)
  regions: list[str] = Field(default_factory=lambda: ["jp", "global"], min_length=1)
  skip_stages: list[Stage] = Field(default_factory=list)
  idea_count: int = Field(default=5, ge=1, le=10)

  @field_validator("regions")
  @classmethod
  def _known_regions(cls, value: list[str]) -> list[str]:
    normalized = [region.strip().lower() for region in value]
    unknown = [region for region in normalized if region not in REGION_LOCALES]
    if unknown:
      raise ValueError(f"Unsupported regions: {', '.join(unknown)}")
    return normalized

  @field_validator("skip_stages")
  @classmethod
  def _skippable_only(cls, value: list[Stage]) -> list[Stage]:
    invalid = [stage.value for stage in value if stage not in SKIPPABLE_STAGES]
    if invalid:
      raise ValueError(f"Stages cannot be skipped: {', '.join(invalid)}")
    return value


class StageMetrics(BaseModel):
  """Token and latency figures reported by one stage run."""

  tokens_used: int = Field(default=0, ge=0)
  latency_ms: float = Field(default=0.0, ge=0)
  model_calls: int = Field(default=0, ge=0)


class PipelineMetrics(BaseModel):
  """Aggregate metrics for a session."""

  tokens_used: int = 0
  latency_ms: float = 0.0
  stages: dict[Stage, StageMetrics] = Field(default_factory=dict)


# Research ---------------------------------------------------------------------


class SourceItem(BaseModel):
  title: str
  link: str
  snippet: str = ""
  position: int | None = None
  date: str | None = None


class ResearchMetrics(BaseModel):
  execution_time_ms: float = 0.0
  tokens_used: int = 0
  api_calls_count: int = 0
  cache_hit_rate: float = Field(default=0.0, ge=0, le=100)
  search_queries: int = 0
  results_analyzed: int = 0
  errors: list[str] = Field(default_factory=list)


class ResearchOutput(BaseModel):
  """Summary, categorized sources and key findings for a topic."""

  topic: str = Field(min_length=1)
  summary: str = Field(min_length=1)
  key_findings: list[str] = Field(min_length=1)
  sources: dict[str, list[SourceItem]] = Field(default_factory=dict)
  metrics: ResearchMetrics = Field(default_factory=ResearchMetrics)


class PlannedQuery(BaseModel):
  query: str = Field(min_length=1)
  region: str = "global"
  purpose: str | None = None


class ResearchQueryPlan(BaseModel):
  """Model response: search queries to run for a topic."""

  queries: list[PlannedQuery] = Field(min_length=1, max_length=10)


class ResearchDigest(BaseModel):
  """Model response: condensed findings from search results."""

  summary: str = Field(min_length=1)
  key_findings: list[str] = Field(min_length=1)


# Ideation ---------------------------------------------------------------------


class BusinessIdea(BaseModel):
  id: str = Field(min_length=1)
  title: str = Field(min_length=1, max_length=60)
  description: str = Field(min_length=1)
  target_customers: list[str] = Field(min_length=1)
  customer_pains: list[str] = Field(default_factory=list)
  value_proposition: str = Field(min_length=1)
  revenue_model: str = Field(min_length=1)
  estimated_revenue: float = Field(ge=0)
  implementation_difficulty: Difficulty
  market_opportunity: str = ""


class IdeationOutput(BaseModel):
  """Fixed-size list of business ideas."""

  ideas: list[BusinessIdea] = Field(min_length=1)

  @model_validator(mode="after")
  def _unique_ids(self) -> IdeationOutput:
    ids = [idea.id for idea in self.ideas]
    if len(ids) != len(set(ids)):
      raise ValueError("Idea ids must be unique.")
    return self


# Critique ---------------------------------------------------------------------


class IdeaScore(BaseModel):
  idea_id: str = Field(min_length=1)
  market_score: float = Field(ge=0, le=50)
  synergy_score: float = Field(ge=0, le=50)
  reasoning: str = ""


class IdeaScorecard(BaseModel):
  """Model response: scores for each idea."""

  scores: list[IdeaScore] = Field(min_length=1)


class IdeaEvaluation(BaseModel):
  idea_id: str
  idea_title: str
  market_score: float
  synergy_score: float
  total_score: float = Field(ge=0, le=100)
  rank: int = Field(ge=1)
  reasoning: str = ""


class CritiqueOutput(BaseModel):
  """Ranked evaluations and the selected idea."""

  evaluations: list[IdeaEvaluation] = Field(min_length=1)
  selected_idea: BusinessIdea

  @model_validator(mode="after")
  def _ranked_and_selected(self) -> CritiqueOutput:
    ranks = [evaluation.rank for evaluation in self.evaluations]
    if ranks != list(range(1, len(ranks) + 1)):
      raise ValueError("Evaluations must be ordered by rank starting at 1.")
    if self.evaluations[0].idea_id != self.selected_idea.id:
      raise ValueError("The selected idea must be the top-ranked evaluation.")
    return self


# Analysis ---------------------------------------------------------------------


class Competitor(BaseModel):
  name: str
  strengths: list[str] = Field(default_factory=list)
  weaknesses: list[str] = Field(default_factory=list)


class MarketAnalysis(BaseModel):
  tam: float = Field(ge=0)
  pam: float = Field(ge=0)
  sam: float = Field(ge=0)
  growth_rate: float
  competitors: list[Competitor] = Field(default_factory=list)
  market_trends: list[str] = Field(default_factory=list)
  regulations: list[str] = Field(default_factory=list)


class SynergyAnalysis(BaseModel):
  total_score: float = Field(ge=0, le=100)
  breakdown: dict[str, float] = Field(default_factory=dict)
  initiatives: list[str] = Field(default_factory=list)
  risks: list[str] = Field(default_factory=list)


class ValidationPhase(BaseModel):
  name: str = Field(min_length=1)
  duration_months: float = Field(gt=0)
  milestones: list[str] = Field(default_factory=list)
  kpis: list[str] = Field(default_factory=list)
  budget: float = Field(default=0.0, ge=0)


class ValidationPlan(BaseModel):
  phases: list[ValidationPhase] = Field(min_length=1)
  total_duration_months: float = Field(gt=0)
  required_budget: float = Field(ge=0)


class AnalysisDraft(BaseModel):
  """Model response: market, synergy and validation analysis."""

  market: MarketAnalysis
  synergy: SynergyAnalysis
  validation: ValidationPlan


class AnalysisOutput(AnalysisDraft):
  """Analysis attached to the idea it describes."""

  idea: BusinessIdea


# Writing ----------------------------------------------------------------------


class SectionType(StrEnum):
  SUMMARY = "summary"
  BUSINESS_MODEL = "business_model"
  MARKET = "market"
  SYNERGY = "synergy"
  VALIDATION = "validation"


SECTION_ORDER: Final[tuple[SectionType, ...]] = (SectionType.SUMMARY, SectionType.BUSINESS_MODEL, SectionType.MARKET, SectionType.SYNERGY, SectionType.VALIDATION)

SECTION_TITLES: Final[dict[SectionType, str]] = {
  SectionType.SUMMARY: "Executive Summary",
  SectionType.BUSINESS_MODEL: "Business Model",
  SectionType.MARKET: "Market Analysis",
  SectionType.SYNERGY: "Synergy Assessment",
  SectionType.VALIDATION: "Validation Plan",
}


class ReportDraft(BaseModel):
  """Model response: prose for each report section."""

  title: str = Field(min_length=1)
  summary: str = Field(min_length=1)
  business_model: str = Field(min_length=1)
  market: str = Field(min_length=1)
  synergy: str = Field(min_length=1)
  validation: str = Field(min_length=1)


class ReportSection(BaseModel):
  id: str
  type: SectionType
  title: str = Field(min_length=1)
  content: str = Field(min_length=1)
  order: int = Field(ge=1)


class ReportMetrics(BaseModel):
  tam: float = Field(ge=0)
  pam: float = Field(ge=0)
  sam: float = Field(ge=0)
  revenue_projection_3y: float = Field(ge=0)
  synergy_score: float = Field(ge=0, le=100)
  implementation_difficulty: Difficulty
  time_to_market_months: float = Field(gt=0)


class FinalReport(BaseModel):
  """Structured report with sections in fixed order."""

  model_config = ConfigDict(frozen=True)

  id: str
  session_id: str
  idea_id: str
  title: str = Field(min_length=1)
  sections: list[ReportSection]
  metrics: ReportMetrics
  generated_at: datetime

  @model_validator(mode="after")
  def _fixed_section_order(self) -> FinalReport:
    types = tuple(section.type for section in self.sections)
    if types != SECTION_ORDER:
      raise ValueError(f"Sections must be exactly {[section.value for section in SECTION_ORDER]}.")
    for position, section in enumerate(self.sections, start=1):
      if section.order != position:
        raise ValueError(f"Section {section.type.value} must have order {position}.")
    return self


# Stage inputs -----------------------------------------------------------------


class ResearchInput(BaseModel):
  topic: str
  max_results: int
  regions: list[str]


class IdeationInput(BaseModel):
  topic: str
  idea_count: int
  research: ResearchOutput | None = None


class CritiqueInput(BaseModel):
  topic: str
  ideas: list[BusinessIdea] = Field(min_length=1)
  research: ResearchOutput | None = None


class AnalysisInput(BaseModel):
  topic: str
  idea: BusinessIdea
  research: ResearchOutput | None = None


class WritingInput(BaseModel):
  session_id: str
  topic: str
  analysis: AnalysisOutput


StageOutput = ResearchOutput | IdeationOutput | CritiqueOutput | AnalysisOutput | FinalReport
