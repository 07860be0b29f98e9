from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from ideaflow.ai.errors import ErrorKind
from ideaflow.services.search import SearchAPIError, SearchClient, SearchQuery, SearchTimeoutError, TokenBucket

BASE_URL = "https://search.test/search"


def _payload(prefix: str, count: int = 2) -> dict:
  return {
    "organic": [{"title": f"{prefix} {index}", "link": f"https://example.com/{prefix}/{index}", "snippet": "text", "position": index} for index in range(1, count + 1)],
    "searchInformation": {"totalResults": "1,234", "timeTaken": 0.12},
  }


async def _no_sleep(_delay: float) -> None:
  return None


def _client(handler, **kwargs) -> SearchClient:
  http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
  return SearchClient("test-key", base_url=BASE_URL, http_client=http_client, sleep=_no_sleep, **kwargs)


@pytest.mark.anyio
async def test_search_parses_results_and_sends_api_key():
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(200, json=_payload("ai"))

  async with _client(handler) as client:
    response = await client.search(client.build_query("AI real estate"))

  assert [result.title for result in response.results] == ["ai 1", "ai 2"]
  assert response.total_results == 1234
  assert response.cached is False
  assert seen[0].headers["X-API-KEY"] == "test-key"
  body = json.loads(seen[0].content)
  assert body == {"q": "AI real estate", "gl": "jp", "hl": "ja", "num": 10, "type": "search"}


@pytest.mark.anyio
async def test_news_results_follow_organic_results():
  def handler(request: httpx.Request) -> httpx.Response:
    payload = _payload("web", count=1)
    payload["news"] = [{"title": "headline", "link": "https://news.example.com/1", "date": "2 days ago"}]
    return httpx.Response(200, json=payload)

  async with _client(handler) as client:
    response = await client.search(SearchQuery(query="proptech"))

  assert [result.title for result in response.results] == ["web 1", "headline"]
  assert response.results[1].date == "2 days ago"


@pytest.mark.anyio
async def test_second_identical_search_is_served_from_cache():
  calls = 0

  def handler(request: httpx.Request) -> httpx.Response:
    nonlocal calls
    calls += 1
    return httpx.Response(200, json=_payload("cached"))

  async with _client(handler) as client:
    first = await client.search(SearchQuery(query="Smart Home"))
    second = await client.search(SearchQuery(query="smart   home"))

  assert calls == 1
  assert first.cached is False
  assert second.cached is True
  assert second.results == first.results


@pytest.mark.anyio
async def test_clear_cache_forces_refetch():
  calls = 0

  def handler(request: httpx.Request) -> httpx.Response:
    nonlocal calls
    calls += 1
    return httpx.Response(200, json=_payload("fresh"))

  async with _client(handler) as client:
    await client.search(SearchQuery(query="topic"))
    client.clear_cache()
    response = await client.search(SearchQuery(query="topic"))

  assert calls == 2
  assert response.cached is False


@pytest.mark.anyio
async def test_search_with_retry_recovers_after_two_server_errors():
  calls = 0

  def handler(request: httpx.Request) -> httpx.Response:
    nonlocal calls
    calls += 1
    if calls < 3:
      return httpx.Response(503)
    return httpx.Response(200, json=_payload("ok"))

  async with _client(handler, max_attempts=3) as client:
    response = await client.search_with_retry("retry me")

  assert calls == 3
  assert response.results[0].title == "ok 1"


@pytest.mark.anyio
async def test_search_with_retry_does_not_retry_auth_failures():
  calls = 0

  def handler(request: httpx.Request) -> httpx.Response:
    nonlocal calls
    calls += 1
    return httpx.Response(401)

  async with _client(handler, max_attempts=3) as client:
    with pytest.raises(SearchAPIError) as exc_info:
      await client.search_with_retry("unauthorized")

  assert calls == 1
  assert exc_info.value.status_code == 401
  assert exc_info.value.retryable is False


@pytest.mark.anyio
async def test_rate_limited_response_is_tagged_rate_limit():
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(429, headers={"Retry-After": "3"})

  async with _client(handler, max_attempts=1) as client:
    with pytest.raises(SearchAPIError) as exc_info:
      await client.search_with_retry("busy")

  assert exc_info.value.kind is ErrorKind.RATE_LIMIT
  assert exc_info.value.retryable is True
  assert exc_info.value.retry_after == 3.0


@pytest.mark.anyio
async def test_batch_search_isolates_failures():
  def handler(request: httpx.Request) -> httpx.Response:
    query = json.loads(request.content)["q"]
    if query == "broken":
      return httpx.Response(500)
    return httpx.Response(200, json=_payload(query, count=1))

  async with _client(handler) as client:
    responses = await client.batch_search([SearchQuery(query="alpha"), SearchQuery(query="broken"), SearchQuery(query="beta")])

  assert [response.query.query for response in responses] == ["alpha", "broken", "beta"]
  assert responses[0].results[0].title == "alpha 1"
  assert responses[1].results == ()
  assert responses[1].error is not None
  assert responses[2].error is None


@pytest.mark.anyio
async def test_slow_response_raises_timeout_fault():
  async def handler(request: httpx.Request) -> httpx.Response:
    await asyncio.sleep(1.0)
    return httpx.Response(200, json=_payload("late"))

  async with _client(handler, timeout_seconds=0.05) as client:
    with pytest.raises(SearchTimeoutError) as exc_info:
      await client.search(SearchQuery(query="slow"))

  assert exc_info.value.kind is ErrorKind.TIMEOUT


@pytest.mark.anyio
async def test_cache_hits_do_not_spend_rate_limit_tokens():
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=_payload("x"))

  bucket = TokenBucket(5, 60.0)
  async with _client(handler, rate_limiter=bucket) as client:
    for _ in range(3):
      await client.search(SearchQuery(query="same"))

  assert bucket.available == 4


@pytest.mark.anyio
async def test_concurrent_searches_after_idle_period_wait_for_refill():
  sent: dict[str, float] = {}

  def handler(request: httpx.Request) -> httpx.Response:
    query = json.loads(request.content)["q"]
    sent[query] = time.monotonic()
    return httpx.Response(200, json=_payload(query, count=1))

  async with _client(handler, rate_limiter=TokenBucket(2, 1.0)) as client:
    await asyncio.sleep(0.7)
    responses = await asyncio.gather(*(client.search(SearchQuery(query=text)) for text in ("alpha", "beta", "gamma")))

  assert [response.results[0].title for response in responses] == ["alpha 1", "beta 1", "gamma 1"]
  assert all(response.error is None for response in responses)
  times = sorted(sent.values())
  assert times[1] - times[0] < 0.5
  assert times[2] - times[1] >= 0.9


@pytest.mark.anyio
@pytest.mark.parametrize(("status", "expected"), [(200, True), (401, False), (403, False), (500, True)])
async def test_validate_api_key(status: int, expected: bool):
  def handler(request: httpx.Request) -> httpx.Response:
    if status == 200:
      return httpx.Response(200, json=_payload("key-check", count=1))
    return httpx.Response(status)

  async with _client(handler) as client:
    assert await client.validate_api_key() is expected


def test_client_requires_api_key():
  with pytest.raises(ValueError):
    SearchClient(None)
