"""Checkpoint store with versioned session snapshots.

Snapshots are msgspec-encoded envelopes `{version, session_id, state}`. Older versions are
upgraded through `_MIGRATIONS` one step at a time before the state is validated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import msgspec
from pydantic import ValidationError

from ideaflow.ai.errors import CheckpointError
from ideaflow.ai.pipeline.state import SessionState
from ideaflow.storage.checkpoints_repo import CheckpointRecord, CheckpointsRepository
from ideaflow.utils.ids import generate_nanoid
from ideaflow.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION: Final[int] = 2

Migration = Callable[[dict[str, Any]], dict[str, Any]]


class SnapshotEnvelope(msgspec.Struct, frozen=True):
  version: int
  session_id: str
  state: dict[str, Any]


def _migrate_v1_to_v2(state: dict[str, Any]) -> dict[str, Any]:
  """v1 named the active stage `current_agent` and had no metrics or skip list."""
  upgraded = dict(state)
  if "current_agent" in upgraded:
    upgraded["current_stage"] = upgraded.pop("current_agent")
  upgraded.setdefault("stage_metrics", {})
  upgraded.setdefault("skipped_stages", [])
  return upgraded


_MIGRATIONS: Final[dict[int, Migration]] = {1: _migrate_v1_to_v2}


def encode_snapshot(state: SessionState) -> bytes:
  envelope = SnapshotEnvelope(version=SNAPSHOT_VERSION, session_id=state.session_id, state=state.model_dump(mode="json"))
  return msgspec.json.encode(envelope)


def decode_snapshot(raw: bytes) -> SessionState:
  """Decode a stored snapshot, migrating it to the current version."""
  try:
    envelope = msgspec.json.decode(raw, type=SnapshotEnvelope)
  except msgspec.DecodeError as exc:
    raise CheckpointError(f"Checkpoint snapshot is unreadable: {exc}") from exc

  if envelope.version > SNAPSHOT_VERSION:
    raise CheckpointError(f"Checkpoint snapshot version {envelope.version} is newer than supported version {SNAPSHOT_VERSION}.")

  state = envelope.state
  version = envelope.version
  while version < SNAPSHOT_VERSION:
    migrate = _MIGRATIONS.get(version)
    if migrate is None:
      raise CheckpointError(f"No migration registered for snapshot version {version}.")
    state = migrate(state)
    version += 1

  try:
    return SessionState.model_validate(state)
  except ValidationError as exc:
    raise CheckpointError(f"Checkpoint snapshot failed validation: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True)
class Checkpoint:
  checkpoint_id: str
  session_id: str
  state: SessionState
  created_at: str


class CheckpointStore:
  """Save and load session snapshots, keeping the newest `retention` per session."""

  def __init__(self, repo: CheckpointsRepository, *, retention: int = 5) -> None:
    if retention < 1:
      raise ValueError("retention must be >= 1")
    self._repo = repo
    self._retention = retention

  async def save(self, state: SessionState) -> str:
    """Persist a full snapshot of `state`; raises `CheckpointError` without writing on failure."""
    try:
      payload = encode_snapshot(state)
    except (TypeError, msgspec.EncodeError) as exc:
      raise CheckpointError(f"Failed to encode checkpoint for session {state.session_id}: {exc}") from exc

    try:
      previous = await self._repo.latest(state.session_id)
      record = CheckpointRecord(
        checkpoint_id=generate_nanoid(),
        session_id=state.session_id,
        sequence=(previous.sequence + 1) if previous else 1,
        payload=payload,
        created_at=utc_now_iso(),
      )
      await self._repo.insert(record)
    except CheckpointError:
      raise
    except Exception as exc:
      raise CheckpointError(f"Failed to write checkpoint for session {state.session_id}: {exc}") from exc

    logger.debug("Checkpoint %s saved for session %s (phase=%s)", record.checkpoint_id, state.session_id, state.phase.value)
    await self._prune(state.session_id)
    return record.checkpoint_id

  async def latest(self, session_id: str) -> Checkpoint | None:
    """Return the most recent checkpoint for a session, or None."""
    try:
      record = await self._repo.latest(session_id)
    except Exception as exc:
      raise CheckpointError(f"Failed to read checkpoint for session {session_id}: {exc}") from exc
    if record is None:
      return None
    return Checkpoint(checkpoint_id=record.checkpoint_id, session_id=record.session_id, state=decode_snapshot(record.payload), created_at=record.created_at)

  async def _prune(self, session_id: str) -> None:
    # The new checkpoint is already durable; a failed prune only delays cleanup.
    try:
      records = await self._repo.list_for_session(session_id)
      stale = records[: max(len(records) - self._retention, 0)]
      if stale:
        removed = await self._repo.delete([record.checkpoint_id for record in stale])
        logger.debug("Pruned %d checkpoint(s) for session %s", removed, session_id)
    except Exception:
      logger.warning("Checkpoint pruning failed for session %s", session_id, exc_info=True)
