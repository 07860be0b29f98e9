"""Research agent: plans searches, runs them and digests the results."""

from __future__ import annotations

import logging
import time
from typing import Final

from ideaflow.ai.agents.base import BaseAgent, StageContext, UsageMeter, UsageSink
from ideaflow.ai.agents.prompts import render_digest_prompt, render_query_plan_prompt
from ideaflow.ai.errors import PipelineFault
from ideaflow.ai.pipeline.contracts import REGION_LOCALES, PlannedQuery, ResearchDigest, ResearchInput, ResearchMetrics, ResearchOutput, ResearchQueryPlan, SourceItem
from ideaflow.ai.pipeline.phases import Stage
from ideaflow.ai.providers.base import AIModel
from ideaflow.services.search.client import SearchClient
from ideaflow.services.search.models import SearchQuery, SearchResponse

logger = logging.getLogger(__name__)

_DEFAULT_QUERY_TEMPLATES: Final[dict[str, tuple[str, ...]]] = {
  "jp": ("{topic} 市場規模 動向", "{topic} ビジネスチャンス"),
}
_FALLBACK_TEMPLATES: Final[tuple[str, ...]] = ("{topic} market size trends", "{topic} business opportunities")


def default_queries(topic: str, regions: list[str]) -> list[PlannedQuery]:
  """Queries used when the model cannot plan any."""
  planned: list[PlannedQuery] = []
  for region in regions:
    for template in _DEFAULT_QUERY_TEMPLATES.get(region, _FALLBACK_TEMPLATES):
      planned.append(PlannedQuery(query=template.format(topic=topic), region=region, purpose="default"))
  return planned


class ResearchAgent(BaseAgent[ResearchInput, ResearchOutput]):
  """Agent responsible for market research on a topic."""

  name = "Researcher"
  stage = Stage.RESEARCH

  def __init__(self, *, model: AIModel, search_client: SearchClient, usage_sink: UsageSink = None) -> None:
    super().__init__(model=model, usage_sink=usage_sink)
    self._search = search_client

  async def _execute(self, input_data: ResearchInput, ctx: StageContext, meter: UsageMeter) -> ResearchOutput:
    started = time.perf_counter()
    errors: list[str] = []

    try:
      plan = await self._generate_structured(render_query_plan_prompt(input_data), ResearchQueryPlan, purpose="plan_queries", ctx=ctx, meter=meter)
      planned = plan.queries
    except PipelineFault as exc:
      logger.warning("Query planning failed for session %s, using default queries: %s", ctx.session_id, exc)
      errors.append(f"query planning: {exc}")
      planned = default_queries(input_data.topic, input_data.regions)

    regions = [self._resolve_region(item, input_data) for item in planned]
    queries = [self._to_search_query(item, region, input_data) for item, region in zip(planned, regions, strict=True)]
    responses = await self._search.batch_search(queries)
    errors.extend(f"search {response.query.query!r}: {response.error}" for response in responses if response.error)

    digest = await self._generate_structured(render_digest_prompt(input_data.topic, responses), ResearchDigest, purpose="digest", ctx=ctx, meter=meter)

    successful = [response for response in responses if response.error is None]
    cached = sum(1 for response in successful if response.cached)
    metrics = ResearchMetrics(
      execution_time_ms=(time.perf_counter() - started) * 1000,
      tokens_used=meter.tokens,
      api_calls_count=meter.calls + len(successful) - cached,
      cache_hit_rate=(cached / len(responses) * 100) if responses else 0.0,
      search_queries=len(queries),
      results_analyzed=sum(len(response.results) for response in responses),
      errors=errors,
    )
    return ResearchOutput(
      topic=input_data.topic,
      summary=digest.summary,
      key_findings=digest.key_findings,
      sources=self._categorize(responses, regions),
      metrics=metrics,
    )

  @staticmethod
  def _resolve_region(item: PlannedQuery, input_data: ResearchInput) -> str:
    region = item.region.strip().lower()
    if region not in input_data.regions:
      return input_data.regions[0]
    return region

  @staticmethod
  def _to_search_query(item: PlannedQuery, region: str, input_data: ResearchInput) -> SearchQuery:
    gl, hl = REGION_LOCALES[region]
    return SearchQuery(query=item.query, gl=gl, hl=hl, num=input_data.max_results)

  @staticmethod
  def _categorize(responses: list[SearchResponse], regions: list[str]) -> dict[str, list[SourceItem]]:
    """Group results by the region each query ran for, dropping duplicate links."""
    sources: dict[str, list[SourceItem]] = {}
    seen: set[str] = set()
    for response, region in zip(responses, regions, strict=True):
      bucket = sources.setdefault(region, [])
      for result in response.results:
        if result.link in seen:
          continue
        seen.add(result.link)
        bucket.append(SourceItem(title=result.title, link=result.link, snippet=result.snippet, position=result.position, date=result.date))
    return sources
