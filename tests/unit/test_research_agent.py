from __future__ import annotations

import json

import httpx
import pytest

from ideaflow.ai.agents.base import StageContext
from ideaflow.ai.agents.research import ResearchAgent, default_queries
from ideaflow.ai.pipeline.contracts import ResearchInput
from ideaflow.services.search import SearchClient


async def _no_sleep(_delay: float) -> None:
  return None


def _search_client(handler) -> SearchClient:
  return SearchClient("test-key", base_url="https://search.test/search", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=_no_sleep)


def _ok(request: httpx.Request) -> httpx.Response:
  query = json.loads(request.content)["q"]
  return httpx.Response(200, json={"organic": [{"title": query, "link": f"https://example.com/{len(query)}", "snippet": "s"}]})


def test_default_queries_use_local_language_for_japan():
  queries = default_queries("不動産 AI", ["jp", "us"])

  assert [query.region for query in queries] == ["jp", "jp", "us", "us"]
  assert "市場規模" in queries[0].query
  assert queries[2].query == "不動産 AI market size trends"


@pytest.mark.anyio
async def test_planning_failure_falls_back_to_default_queries(make_harness, pipeline_script):
  script = pipeline_script()
  script["ResearchQueryPlan"] = [{"queries": []}]
  model = make_harness(script).model
  sent: list[dict] = []

  def handler(request: httpx.Request) -> httpx.Response:
    sent.append(json.loads(request.content))
    return _ok(request)

  agent = ResearchAgent(model=model, search_client=_search_client(handler))
  result = await agent.run(ResearchInput(topic="スマート農業", max_results=5, regions=["jp"]), StageContext(session_id="s-1"))

  output = result.output
  assert [payload["gl"] for payload in sent] == ["jp", "jp"]
  assert all(payload["num"] == 5 for payload in sent)
  assert output.metrics.errors[0].startswith("query planning")
  assert output.metrics.api_calls_count == 4
  assert output.metrics.search_queries == 2
  assert result.metrics.tokens_used == 350
  assert result.metrics.model_calls == 2


@pytest.mark.anyio
async def test_failed_query_is_recorded_and_cache_hits_are_counted(make_harness):
  model = make_harness().model

  def handler(request: httpx.Request) -> httpx.Response:
    if json.loads(request.content)["q"] == "proptech AI trends":
      return httpx.Response(500)
    return _ok(request)

  agent = ResearchAgent(model=model, search_client=_search_client(handler))
  research_input = ResearchInput(topic="AI real estate", max_results=10, regions=["jp", "global"])

  first = await agent.run(research_input, StageContext(session_id="s-2"))
  second = await agent.run(research_input, StageContext(session_id="s-2", attempt=2))

  assert any(error.startswith("search 'proptech AI trends'") for error in first.output.metrics.errors)
  assert first.output.metrics.results_analyzed == 1
  assert first.output.metrics.cache_hit_rate == 0.0
  assert second.output.metrics.cache_hit_rate == 50.0
  assert list(first.output.sources) == ["jp", "global"]
  assert first.output.sources["global"] == []
