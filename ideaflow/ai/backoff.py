"""Retry helpers with a configurable backoff strategy."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ideaflow.config import BackoffStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
  """Delay schedule between attempts.

  `fixed` waits `base_delay` every time; `exponential` waits base * multiplier ** (attempt - 1).
  Both are capped at `max_delay`. Jitter spreads the delay by up to +/-10%.
  """

  strategy: BackoffStrategy = "fixed"
  base_delay: float = 1.0
  max_delay: float = 30.0
  multiplier: float = 2.0
  jitter: bool = False

  def delay_for(self, attempt: int) -> float:
    """Return the delay to wait after failed attempt number `attempt` (1-based)."""
    if attempt < 1:
      raise ValueError("attempt must be >= 1")
    if self.strategy == "fixed":
      delay = self.base_delay
    else:
      delay = self.base_delay * (self.multiplier ** (attempt - 1))
    delay = min(delay, self.max_delay)
    if self.jitter and delay > 0:
      delay = max(0.0, delay + delay * random.uniform(-0.1, 0.1))
    return delay


async def retry_with_backoff(
  func: Callable[[], Awaitable[T]],
  *,
  policy: BackoffPolicy,
  max_attempts: int,
  is_retryable: Callable[[Exception], bool],
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  label: str = "operation",
) -> T:
  """Run `func` up to `max_attempts` times, sleeping between retryable failures.

  Non-retryable errors and the error from the final attempt propagate unchanged.
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be >= 1")

  attempt = 1
  while True:
    try:
      return await func()
    except Exception as exc:
      if attempt >= max_attempts or not is_retryable(exc):
        raise
      delay = policy.delay_for(attempt)
      logger.warning("Retry attempt %s/%s for %s after error: %s. Retrying in %.2fs...", attempt, max_attempts, label, exc, delay)
      await sleep(delay)
      attempt += 1
