"""Rate-limited, caching search client for the research stage."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from types import TracebackType
from typing import Final, Self

import httpx
from pydantic import ValidationError

from ideaflow.ai.backoff import BackoffPolicy, retry_with_backoff
from ideaflow.ai.errors import parse_retry_after
from ideaflow.config import Settings
from ideaflow.services.search.cache import SearchCache
from ideaflow.services.search.errors import SearchAPIError, SearchError, SearchNetworkError, SearchResponseError, SearchTimeoutError
from ideaflow.services.search.models import CacheEntry, SearchPayload, SearchQuery, SearchResponse
from ideaflow.services.search.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL: Final[str] = "https://google.serper.dev/search"


class SearchClient:
  """Search API client owning its cache, rate limiter and HTTP connection pool.

  Construct one per application context and close it with `aclose` (or use it as an
  async context manager). The cache and bucket are shared by every caller of the
  instance, including concurrent batch items.
  """

  def __init__(
    self,
    api_key: str | None,
    *,
    base_url: str = DEFAULT_BASE_URL,
    timeout_seconds: float = 10.0,
    cache: SearchCache | None = None,
    rate_limiter: TokenBucket | None = None,
    backoff: BackoffPolicy | None = None,
    max_attempts: int = 3,
    default_gl: str = "jp",
    default_hl: str = "ja",
    default_num: int = 10,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    if not api_key:
      raise ValueError("SERPER_API_KEY is required for the search client.")
    if max_attempts < 1:
      raise ValueError("max_attempts must be >= 1")
    self._api_key = api_key
    self._base_url = base_url
    self._timeout_seconds = timeout_seconds
    self._cache = cache or SearchCache(300.0)
    self._rate_limiter = rate_limiter or TokenBucket(100, 60.0)
    self._backoff = backoff or BackoffPolicy(strategy="fixed", base_delay=1.0)
    self._max_attempts = max_attempts
    self._default_gl = default_gl
    self._default_hl = default_hl
    self._default_num = default_num
    self._sleep = sleep
    self._owns_http = http_client is None
    self._http = http_client or httpx.AsyncClient()
    self._closed = False

  @classmethod
  def from_settings(cls, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> SearchClient:
    """Build a client configured from environment settings."""
    return cls(
      settings.serper_api_key,
      base_url=settings.search_base_url,
      timeout_seconds=settings.search_timeout_seconds,
      cache=SearchCache(settings.search_cache_ttl_seconds, max_entries=settings.search_cache_max_entries),
      rate_limiter=TokenBucket(settings.search_rate_limit_tokens, settings.search_rate_limit_interval_seconds),
      backoff=BackoffPolicy(strategy=settings.search_backoff, base_delay=settings.search_retry_delay_seconds),
      max_attempts=settings.search_max_attempts,
      default_gl=settings.search_default_gl,
      default_hl=settings.search_default_hl,
      default_num=settings.search_default_num,
      http_client=http_client,
    )

  async def __aenter__(self) -> Self:
    return self

  async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
    await self.aclose()

  async def aclose(self) -> None:
    """Release the HTTP pool (when owned) and drop cached results."""
    if self._closed:
      return
    self._closed = True
    self._cache.clear()
    if self._owns_http:
      await self._http.aclose()

  def build_query(self, text: str, *, gl: str | None = None, hl: str | None = None, num: int | None = None, search_type: str = "search") -> SearchQuery:
    """Apply locale and result-count defaults to a query string."""
    return SearchQuery(query=text, gl=gl or self._default_gl, hl=hl or self._default_hl, num=num or self._default_num, type=search_type)

  async def search(self, query: SearchQuery) -> SearchResponse:
    """Return results for `query`, from cache when fresh, otherwise from the API."""
    key = query.cache_key()
    entry = self._cache.get(key)
    if entry is not None:
      logger.debug("Search cache hit for %r", query.query)
      return SearchResponse(query=query, results=entry.results, total_results=entry.total_results, search_time=0.0, cached=True)

    # Only network calls spend rate-limit tokens.
    await self._rate_limiter.acquire()
    response = await self._fetch(query)
    self._cache.put(key, CacheEntry(query=query, results=response.results, total_results=response.total_results, stored_at=self._cache.now()))
    return response

  async def search_with_retry(self, query: str | SearchQuery) -> SearchResponse:
    """Search with bounded retries; auth failures and other 4xx errors fail immediately."""
    resolved = self.build_query(query) if isinstance(query, str) else query
    return await retry_with_backoff(
      lambda: self.search(resolved),
      policy=self._backoff,
      max_attempts=self._max_attempts,
      is_retryable=lambda exc: isinstance(exc, SearchError) and exc.retryable,
      sleep=self._sleep,
      label=f"search {resolved.query!r}",
    )

  async def batch_search(self, queries: Sequence[SearchQuery]) -> list[SearchResponse]:
    """Run all queries concurrently; a failed query yields an empty response with `error` set."""

    async def _isolated(query: SearchQuery) -> SearchResponse:
      try:
        return await self.search(query)
      except SearchError as exc:
        logger.warning("Batch search item failed for %r: %s", query.query, exc)
        return SearchResponse.failed(query, str(exc))

    return list(await asyncio.gather(*(_isolated(query) for query in queries)))

  def clear_cache(self) -> None:
    self._cache.clear()

  async def validate_api_key(self) -> bool:
    """Send a one-result query; only 401/403 mean the key is invalid."""
    check = self.build_query("test", num=1)
    await self._rate_limiter.acquire()
    try:
      await self._fetch(check)
    except SearchAPIError as exc:
      if exc.is_auth_error:
        logger.warning("Search API key rejected with status %s", exc.status_code)
        return False
      logger.info("Search API key check inconclusive: %s", exc)
    except SearchError as exc:
      logger.info("Search API key check inconclusive: %s", exc)
    return True

  async def _fetch(self, query: SearchQuery) -> SearchResponse:
    headers = {"X-API-KEY": self._api_key, "Content-Type": "application/json"}
    started = time.perf_counter()
    try:
      async with asyncio.timeout(self._timeout_seconds):
        response = await self._http.post(self._base_url, json=query.to_payload(), headers=headers, timeout=self._timeout_seconds)
    except (TimeoutError, httpx.TimeoutException) as exc:
      raise SearchTimeoutError(f"Search timed out after {self._timeout_seconds}s") from exc
    except httpx.RequestError as exc:
      raise SearchNetworkError(f"Search request failed: {exc}") from exc

    if response.status_code >= 400:
      raise SearchAPIError.from_status(response.status_code, response.reason_phrase or "error", retry_after=parse_retry_after(response.headers.get("Retry-After")))

    try:
      payload = SearchPayload.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
      raise SearchResponseError(f"Search response could not be parsed: {exc}") from exc

    elapsed = time.perf_counter() - started
    info = payload.search_information
    results = payload.to_results()
    logger.debug("Search for %r returned %d results in %.3fs", query.query, len(results), elapsed)
    return SearchResponse(
      query=query,
      results=results,
      total_results=info.total_results if info else len(results),
      search_time=info.time_taken if info and info.time_taken else elapsed,
      cached=False,
    )
