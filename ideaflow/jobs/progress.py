"""Progress events pushed to external observers."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from ideaflow.ai.pipeline.phases import Phase, Stage
from ideaflow.utils.time import utc_now

logger = logging.getLogger(__name__)

MAX_TRACKED_EVENTS = 100


class PipelineCancelledError(Exception):
  """Raised at a stage boundary when the job was cancelled."""


class ProgressEventType(StrEnum):
  PHASE_CHANGE = "phase_change"
  STAGE_START = "stage_start"
  STAGE_COMPLETE = "stage_complete"
  PROGRESS = "progress"
  RECOVERY = "recovery"
  ERROR = "error"
  COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressEvent:
  """Immutable record of one observable state change."""

  type: ProgressEventType
  session_id: str
  timestamp: datetime = field(default_factory=utc_now)
  progress: float | None = None
  phase: Phase | None = None
  stage: Stage | None = None
  message: str | None = None
  error: dict[str, Any] | None = None

  def to_dict(self) -> dict[str, Any]:
    """Wire shape: `{type, sessionId, timestamp, data: {...}}` with unset data fields omitted."""
    data = {
      "progress": self.progress,
      "phase": self.phase.value if self.phase else None,
      "stage": self.stage.value if self.stage else None,
      "message": self.message,
      "error": self.error,
    }
    return {"type": self.type.value, "sessionId": self.session_id, "timestamp": self.timestamp.isoformat(), "data": {key: value for key, value in data.items() if value is not None}}


Subscriber = Callable[[ProgressEvent], Awaitable[None]]


class ProgressPublisher:
  """Deliver events in order to async subscribers and keep a short history per session."""

  def __init__(self, *, history_size: int = MAX_TRACKED_EVENTS) -> None:
    self._subscribers: list[Subscriber] = []
    self._history: dict[str, deque[ProgressEvent]] = {}
    self._history_size = history_size

  def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
    """Register a subscriber and return a callable that removes it."""
    self._subscribers.append(subscriber)

    def _unsubscribe() -> None:
      if subscriber in self._subscribers:
        self._subscribers.remove(subscriber)

    return _unsubscribe

  async def publish(self, event: ProgressEvent) -> None:
    self._history.setdefault(event.session_id, deque(maxlen=self._history_size)).append(event)
    for subscriber in list(self._subscribers):
      # Observers are external; their failures must not affect the run.
      try:
        await subscriber(event)
      except Exception:
        logger.warning("Progress subscriber failed for session %s event %s", event.session_id, event.type.value, exc_info=True)

  def history(self, session_id: str) -> list[ProgressEvent]:
    return list(self._history.get(session_id, ()))

  def forget(self, session_id: str) -> None:
    self._history.pop(session_id, None)
