"""Rate-limited caching search client."""

from ideaflow.services.search.cache import SearchCache
from ideaflow.services.search.client import SearchClient
from ideaflow.services.search.errors import SearchAPIError, SearchError, SearchNetworkError, SearchRateLimitedError, SearchResponseError, SearchTimeoutError
from ideaflow.services.search.models import CacheEntry, SearchQuery, SearchResponse, SearchResult
from ideaflow.services.search.rate_limiter import TokenBucket

__all__ = [
  "CacheEntry",
  "SearchAPIError",
  "SearchCache",
  "SearchClient",
  "SearchError",
  "SearchNetworkError",
  "SearchQuery",
  "SearchRateLimitedError",
  "SearchResponse",
  "SearchResponseError",
  "SearchResult",
  "SearchTimeoutError",
  "TokenBucket",
]
