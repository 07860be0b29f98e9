"""Token bucket admission control for outbound search calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucket:
  """Bucket of `capacity` tokens, refilled to full `refill_interval` seconds after it is first drawn.

  The refill window opens when a token is taken from a full bucket, so an idle bucket
  never shortens the wait of the caller that finds it empty. `acquire` takes one token
  or sleeps until the window closes. Waiters queue on an `asyncio.Lock`, which wakes them
  in arrival order.
  """

  def __init__(
    self,
    capacity: int,
    refill_interval: float,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    if capacity < 1:
      raise ValueError("capacity must be >= 1")
    if refill_interval <= 0:
      raise ValueError("refill_interval must be > 0")
    self._capacity = capacity
    self._refill_interval = refill_interval
    self._clock = clock
    self._sleep = sleep
    self._tokens = capacity
    self._window_start: float | None = None
    self._lock = asyncio.Lock()

  @property
  def available(self) -> int:
    self._refill()
    return self._tokens

  def _refill(self) -> None:
    if self._window_start is None:
      return
    if self._clock() - self._window_start < self._refill_interval:
      return
    self._tokens = self._capacity
    self._window_start = None

  async def acquire(self) -> None:
    async with self._lock:
      while True:
        self._refill()
        if self._tokens > 0:
          if self._window_start is None:
            self._window_start = self._clock()
          self._tokens -= 1
          return
        opened = self._window_start if self._window_start is not None else self._clock()
        wait = max(opened + self._refill_interval - self._clock(), 0.0)
        logger.debug("Rate limit reached; waiting %.3fs for refill", wait)
        await self._sleep(wait)
