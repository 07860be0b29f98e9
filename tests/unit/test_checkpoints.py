from __future__ import annotations

from unittest.mock import AsyncMock

import msgspec
import pytest

from ideaflow.ai.errors import CheckpointError
from ideaflow.ai.pipeline.phases import Phase, Stage
from ideaflow.ai.pipeline.state import SessionState
from ideaflow.storage.checkpoints import SNAPSHOT_VERSION, CheckpointStore, decode_snapshot, encode_snapshot
from ideaflow.storage.checkpoints_repo import InMemoryCheckpointsRepository


def _state(session_id: str = "session-1") -> SessionState:
  state = SessionState(session_id=session_id, topic="AI real estate opportunities")
  state.enter(Phase.RESEARCHING)
  return state


@pytest.mark.anyio
async def test_latest_returns_most_recent_snapshot():
  store = CheckpointStore(InMemoryCheckpointsRepository())
  state = _state()
  await store.save(state)

  state.enter(Phase.IDEATING)
  state.advance_progress(20.0)
  second_id = await store.save(state)

  checkpoint = await store.latest("session-1")
  assert checkpoint is not None
  assert checkpoint.checkpoint_id == second_id
  assert checkpoint.state.phase is Phase.IDEATING
  assert checkpoint.state.current_stage is Stage.IDEATION
  assert checkpoint.state.progress == 20.0


@pytest.mark.anyio
async def test_snapshot_is_isolated_from_later_mutation():
  store = CheckpointStore(InMemoryCheckpointsRepository())
  state = _state()
  await store.save(state)

  state.topic = "changed"
  checkpoint = await store.latest("session-1")
  assert checkpoint is not None
  assert checkpoint.state.topic == "AI real estate opportunities"


@pytest.mark.anyio
async def test_latest_is_none_for_unknown_session():
  store = CheckpointStore(InMemoryCheckpointsRepository())
  assert await store.latest("missing") is None


@pytest.mark.anyio
async def test_store_keeps_only_newest_checkpoints():
  repo = InMemoryCheckpointsRepository()
  store = CheckpointStore(repo, retention=2)
  state = _state()
  ids = [await store.save(state) for _ in range(4)]

  records = await repo.list_for_session("session-1")
  assert [record.checkpoint_id for record in records] == ids[-2:]
  assert [record.sequence for record in records] == [3, 4]


@pytest.mark.anyio
async def test_repository_failure_raises_checkpoint_error():
  repo = AsyncMock()
  repo.latest.return_value = None
  repo.insert.side_effect = OSError("disk unavailable")
  store = CheckpointStore(repo)

  with pytest.raises(CheckpointError):
    await store.save(_state())


def test_v1_snapshot_is_migrated():
  legacy = {
    "version": 1,
    "session_id": "legacy",
    "state": {"session_id": "legacy", "topic": "smart farming", "phase": "ideating", "current_agent": "ideation", "progress": 20.0},
  }
  state = decode_snapshot(msgspec.json.encode(legacy))

  assert state.current_stage is Stage.IDEATION
  assert state.stage_metrics == {}
  assert state.skipped_stages == []


def test_encoded_snapshot_carries_current_version():
  envelope = msgspec.json.decode(encode_snapshot(_state()))
  assert envelope["version"] == SNAPSHOT_VERSION
  assert envelope["session_id"] == "session-1"


@pytest.mark.parametrize(
  "raw",
  [
    b"not json",
    msgspec.json.encode({"version": SNAPSHOT_VERSION + 1, "session_id": "s", "state": {}}),
    msgspec.json.encode({"version": SNAPSHOT_VERSION, "session_id": "s", "state": {"session_id": "s"}}),
  ],
)
def test_unreadable_snapshots_raise_checkpoint_error(raw: bytes):
  with pytest.raises(CheckpointError):
    decode_snapshot(raw)
