"""Typed faults raised by the search client."""

from __future__ import annotations

from ideaflow.ai.errors import ErrorKind, PipelineFault

# 408 and 429 are transient even though they are 4xx.
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class SearchError(PipelineFault):
  """Base class for search client failures."""

  kind = ErrorKind.NETWORK
  default_retryable = True


class SearchAPIError(SearchError):
  """The search API answered with a non-2xx status."""

  def __init__(self, status_code: int, reason: str, *, retry_after: float | None = None) -> None:
    retryable = status_code >= 500 or status_code in _RETRYABLE_CLIENT_STATUSES
    super().__init__(f"Search API returned {status_code}: {reason}", retryable=retryable, retry_after=retry_after)
    self.status_code = status_code
    self.reason = reason

  @classmethod
  def from_status(cls, status_code: int, reason: str, *, retry_after: float | None = None) -> SearchAPIError:
    if status_code == 429:
      return SearchRateLimitedError(status_code, reason, retry_after=retry_after)
    return cls(status_code, reason, retry_after=retry_after)

  @property
  def is_auth_error(self) -> bool:
    return self.status_code in {401, 403}


class SearchRateLimitedError(SearchAPIError):
  kind = ErrorKind.RATE_LIMIT


class SearchNetworkError(SearchError):
  """Transport failure before a response arrived."""


class SearchTimeoutError(SearchError):
  """The per-call deadline elapsed."""

  kind = ErrorKind.TIMEOUT


class SearchResponseError(SearchError):
  """A 2xx response whose body could not be parsed."""
