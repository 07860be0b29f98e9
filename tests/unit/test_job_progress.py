from __future__ import annotations

import pytest

from ideaflow.ai.pipeline.phases import Phase, Stage
from ideaflow.jobs.progress import ProgressEvent, ProgressEventType, ProgressPublisher


def test_event_wire_shape_omits_unset_fields():
  event = ProgressEvent(type=ProgressEventType.STAGE_START, session_id="s-1", progress=20.0, phase=Phase.IDEATING, stage=Stage.IDEATION)
  payload = event.to_dict()

  assert payload["type"] == "stage_start"
  assert payload["sessionId"] == "s-1"
  assert payload["data"] == {"progress": 20.0, "phase": "ideating", "stage": "ideation"}
  assert "timestamp" in payload


@pytest.mark.anyio
async def test_publisher_delivers_in_order_and_survives_failing_subscriber():
  publisher = ProgressPublisher()
  received: list[ProgressEventType] = []

  async def _broken(event: ProgressEvent) -> None:
    raise RuntimeError("observer crashed")

  async def _collect(event: ProgressEvent) -> None:
    received.append(event.type)

  publisher.subscribe(_broken)
  unsubscribe = publisher.subscribe(_collect)
  await publisher.publish(ProgressEvent(type=ProgressEventType.PHASE_CHANGE, session_id="s-1"))
  await publisher.publish(ProgressEvent(type=ProgressEventType.PROGRESS, session_id="s-1"))
  unsubscribe()
  await publisher.publish(ProgressEvent(type=ProgressEventType.COMPLETED, session_id="s-1"))

  assert received == [ProgressEventType.PHASE_CHANGE, ProgressEventType.PROGRESS]
  assert [event.type for event in publisher.history("s-1")] == [ProgressEventType.PHASE_CHANGE, ProgressEventType.PROGRESS, ProgressEventType.COMPLETED]


@pytest.mark.anyio
async def test_history_is_bounded_per_session():
  publisher = ProgressPublisher(history_size=3)
  for _ in range(5):
    await publisher.publish(ProgressEvent(type=ProgressEventType.PROGRESS, session_id="s-1"))
  await publisher.publish(ProgressEvent(type=ProgressEventType.PROGRESS, session_id="s-2"))

  assert len(publisher.history("s-1")) == 3
  assert len(publisher.history("s-2")) == 1
  publisher.forget("s-1")
  assert publisher.history("s-1") == []
