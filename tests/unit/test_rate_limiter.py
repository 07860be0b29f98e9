from __future__ import annotations

import asyncio
import time

import pytest

from ideaflow.services.search.rate_limiter import TokenBucket


@pytest.mark.anyio
async def test_third_call_waits_for_refill():
  bucket = TokenBucket(2, 1.0)
  started = time.monotonic()

  await bucket.acquire()
  await bucket.acquire()
  assert time.monotonic() - started < 0.5

  await bucket.acquire()
  assert time.monotonic() - started >= 0.9


@pytest.mark.anyio
async def test_waiters_are_admitted_in_arrival_order():
  bucket = TokenBucket(1, 0.2)
  order: list[int] = []

  async def _worker(index: int) -> None:
    await bucket.acquire()
    order.append(index)

  await bucket.acquire()
  tasks = []
  for index in range(3):
    tasks.append(asyncio.create_task(_worker(index)))
    await asyncio.sleep(0)
  await asyncio.gather(*tasks)

  assert order == [0, 1, 2]


@pytest.mark.anyio
async def test_available_refills_after_interval_with_fake_clock():
  now = [0.0]
  sleeps: list[float] = []

  async def _sleep(delay: float) -> None:
    sleeps.append(delay)
    now[0] += delay

  bucket = TokenBucket(2, 10.0, clock=lambda: now[0], sleep=_sleep)
  await bucket.acquire()
  await bucket.acquire()
  assert bucket.available == 0

  now[0] = 4.0
  await bucket.acquire()

  assert sleeps == [6.0]
  assert bucket.available == 1


def test_bucket_rejects_invalid_configuration():
  with pytest.raises(ValueError):
    TokenBucket(0, 1.0)
  with pytest.raises(ValueError):
    TokenBucket(1, 0)


@pytest.mark.anyio
async def test_idle_bucket_still_waits_a_full_interval_for_the_third_call():
  now = [0.0]
  sleeps: list[float] = []
  admitted: list[float] = []

  async def _sleep(delay: float) -> None:
    sleeps.append(delay)
    now[0] += delay

  bucket = TokenBucket(2, 1.0, clock=lambda: now[0], sleep=_sleep)
  now[0] = 0.7

  async def _take() -> None:
    await bucket.acquire()
    admitted.append(now[0])

  await asyncio.gather(_take(), _take(), _take())

  assert sleeps == [1.0]
  assert admitted == [0.7, 0.7, 1.7]


@pytest.mark.anyio
async def test_concurrent_acquires_after_idle_period_respect_refill_interval():
  bucket = TokenBucket(2, 1.0)
  await asyncio.sleep(0.7)
  admitted: list[float] = []

  async def _take() -> None:
    await bucket.acquire()
    admitted.append(time.monotonic())

  await asyncio.gather(_take(), _take(), _take())

  admitted.sort()
  assert admitted[1] - admitted[0] < 0.5
  assert admitted[2] - admitted[1] >= 0.9
