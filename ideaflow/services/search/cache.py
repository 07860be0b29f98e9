"""TTL cache for search results."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from ideaflow.services.search.models import CacheEntry

logger = logging.getLogger(__name__)


class SearchCache:
  """Key-to-entry map with time-based expiry and a size cap.

  Entries are stored and replaced whole. Expired entries read as misses and are
  overwritten by the next `put`. When full, the oldest write is evicted.
  """

  def __init__(self, ttl_seconds: float, *, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
    if ttl_seconds < 0:
      raise ValueError("ttl_seconds must be >= 0")
    if max_entries < 1:
      raise ValueError("max_entries must be >= 1")
    self._ttl_seconds = ttl_seconds
    self._max_entries = max_entries
    self._clock = clock
    self._entries: dict[str, CacheEntry] = {}

  def now(self) -> float:
    return self._clock()

  def get(self, key: str) -> CacheEntry | None:
    entry = self._entries.get(key)
    if entry is None:
      return None
    if self._clock() - entry.stored_at >= self._ttl_seconds:
      logger.debug("Search cache entry expired for %s", key)
      return None
    return entry

  def put(self, key: str, entry: CacheEntry) -> None:
    # Re-inserting moves the key to the end so eviction stays oldest-first.
    self._entries.pop(key, None)
    while len(self._entries) >= self._max_entries:
      oldest = next(iter(self._entries))
      del self._entries[oldest]
    self._entries[key] = entry

  def clear(self) -> None:
    self._entries.clear()

  def __len__(self) -> int:
    return len(self._entries)
