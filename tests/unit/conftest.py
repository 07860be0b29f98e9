"""Fixtures for running the pipeline against a scripted model and a mocked search API."""

from __future__ import annotations

import copy
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from ideaflow.ai.agents import AnalysisAgent, CritiqueAgent, IdeationAgent, ResearchAgent, WritingAgent
from ideaflow.ai.errors import RecoveryLimits
from ideaflow.ai.orchestrator import PipelineOrchestrator, StageAgents
from ideaflow.ai.providers.base import AIModel, StructuredModelResponse
from ideaflow.jobs.progress import ProgressPublisher
from ideaflow.services.search import SearchClient
from ideaflow.storage.checkpoints import CheckpointStore
from ideaflow.storage.checkpoints_repo import InMemoryCheckpointsRepository
from ideaflow.storage.reports_repo import InMemoryReportsRepository

TOKENS = {
  "ResearchQueryPlan": 150,
  "ResearchDigest": 200,
  "IdeationOutput": 300,
  "IdeaScorecard": 120,
  "AnalysisDraft": 400,
  "ReportDraft": 500,
}


class ScriptedModel(AIModel):
  """Answers structured calls from a per-schema script.

  Each script entry is a payload dict, an exception to raise, or an async callable
  returning a payload. The last entry repeats once the others are used up.
  """

  name = "scripted"

  def __init__(self, script: dict[str, list[Any]]) -> None:
    self._script = {title: list(steps) for title, steps in script.items()}
    self.calls: Counter[str] = Counter()

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    title = schema["title"]
    self.calls[title] += 1
    steps = self._script[title]
    step = steps.pop(0) if len(steps) > 1 else steps[0]
    if isinstance(step, Exception):
      raise step
    if callable(step):
      step = await step()
    return StructuredModelResponse(content=copy.deepcopy(step), usage={"total_tokens": TOKENS[title]})


def _idea(index: int) -> dict[str, Any]:
  return {
    "id": f"idea-{index}",
    "title": f"Idea {index}",
    "description": f"Business idea number {index}",
    "target_customers": ["property managers"],
    "customer_pains": ["manual tenant screening"],
    "value_proposition": "Faster leasing decisions",
    "revenue_model": "subscription",
    "estimated_revenue": 1_000_000.0 * index,
    "implementation_difficulty": "medium",
  }


def default_script(idea_count: int = 3) -> dict[str, list[Any]]:
  return {
    "ResearchQueryPlan": [{"queries": [{"query": "AI real estate market Japan", "region": "jp"}, {"query": "proptech AI trends", "region": "global"}]}],
    "ResearchDigest": [{"summary": "Demand for AI tooling in real estate is growing.", "key_findings": ["Valuation automation is spreading", "Labor shortages in brokerage"]}],
    "IdeationOutput": [{"ideas": [_idea(index) for index in range(1, idea_count + 1)]}],
    "IdeaScorecard": [{"scores": [{"idea_id": f"idea-{index}", "market_score": 20.0 + 10 * (index == 2), "synergy_score": 15.0 + 20 * (index == 2), "reasoning": "ok"} for index in range(1, idea_count + 1)]}],
    "AnalysisDraft": [
      {
        "market": {"tam": 1e10, "pam": 5e9, "sam": 1e9, "growth_rate": 0.12, "competitors": [{"name": "Incumbent"}]},
        "synergy": {"total_score": 78.0, "breakdown": {"data": 40.0, "channels": 38.0}},
        "validation": {"phases": [{"name": "MVP", "duration_months": 3}, {"name": "Pilot", "duration_months": 6}], "total_duration_months": 9, "required_budget": 5e6},
      }
    ],
    "ReportDraft": [
      {
        "title": "AI leasing assistant",
        "summary": "Executive summary text",
        "business_model": "Subscription per managed unit",
        "market": "TAM of 10B",
        "synergy": "Strong data synergies",
        "validation": "Two phase validation over nine months",
      }
    ],
  }


def search_payload(request: httpx.Request) -> httpx.Response:
  return httpx.Response(
    200,
    json={
      "organic": [
        {"title": "Market report", "link": "https://example.com/report", "snippet": "Market grows", "position": 1},
        {"title": "Trend article", "link": "https://example.com/trend", "snippet": "Trend", "position": 2},
      ],
      "searchInformation": {"totalResults": "2", "timeTaken": 0.1},
    },
  )


@dataclass
class PipelineHarness:
  model: ScriptedModel
  orchestrator: PipelineOrchestrator
  checkpoints: CheckpointStore
  reports: InMemoryReportsRepository
  publisher: ProgressPublisher
  search: SearchClient
  sleeps: list[float] = field(default_factory=list)


HarnessFactory = Callable[..., PipelineHarness]


@pytest.fixture
def make_harness() -> HarnessFactory:
  """Build an orchestrator wired to in-memory storage; pass `checkpoints`/`reports` to share them."""

  def _factory(
    script: dict[str, list[Any]] | None = None,
    *,
    limits: RecoveryLimits | None = None,
    stage_timeout_seconds: float = 30.0,
    rate_limit_wait_seconds: float = 0.5,
    checkpoints: CheckpointStore | None = None,
    reports: InMemoryReportsRepository | None = None,
    search_handler: Callable[[httpx.Request], httpx.Response] = search_payload,
  ) -> PipelineHarness:
    model = ScriptedModel(script or default_script())
    sleeps: list[float] = []

    async def _sleep(delay: float) -> None:
      sleeps.append(delay)

    async def _no_sleep(_delay: float) -> None:
      return None

    search = SearchClient("test-key", base_url="https://search.test/search", http_client=httpx.AsyncClient(transport=httpx.MockTransport(search_handler)), sleep=_no_sleep)
    if checkpoints is None:
      checkpoints = CheckpointStore(InMemoryCheckpointsRepository())
    if reports is None:
      reports = InMemoryReportsRepository()
    publisher = ProgressPublisher()
    agents = StageAgents(
      research=ResearchAgent(model=model, search_client=search),
      ideation=IdeationAgent(model=model),
      critique=CritiqueAgent(model=model),
      analysis=AnalysisAgent(model=model),
      writing=WritingAgent(model=model),
    )
    orchestrator = PipelineOrchestrator(
      agents=agents,
      checkpoints=checkpoints,
      reports=reports,
      publisher=publisher,
      limits=limits,
      stage_timeout_seconds=stage_timeout_seconds,
      rate_limit_wait_seconds=rate_limit_wait_seconds,
      idea_count=3,
      sleep=_sleep,
    )
    return PipelineHarness(model=model, orchestrator=orchestrator, checkpoints=checkpoints, reports=reports, publisher=publisher, search=search, sleeps=sleeps)

  return _factory


@pytest.fixture
def pipeline_script() -> Callable[..., dict[str, list[Any]]]:
  """Factory for a script that drives every stage to success."""
  return default_script
