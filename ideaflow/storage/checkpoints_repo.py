"""Storage interfaces for session checkpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CheckpointRecord:
  """Immutable stored checkpoint; `payload` is an encoded snapshot."""

  checkpoint_id: str
  session_id: str
  sequence: int
  payload: bytes
  created_at: str


class CheckpointsRepository(Protocol):
  """Repository contract for checkpoint persistence."""

  async def insert(self, record: CheckpointRecord) -> None:
    """Persist a checkpoint atomically."""

  async def latest(self, session_id: str) -> CheckpointRecord | None:
    """Return the newest checkpoint for a session."""

  async def list_for_session(self, session_id: str) -> list[CheckpointRecord]:
    """Return a session's checkpoints, oldest first."""

  async def delete(self, checkpoint_ids: list[str]) -> int:
    """Delete checkpoints by id and return how many were removed."""


class InMemoryCheckpointsRepository:
  """Process-local checkpoint repository."""

  def __init__(self) -> None:
    self._by_session: dict[str, list[CheckpointRecord]] = {}

  async def insert(self, record: CheckpointRecord) -> None:
    self._by_session.setdefault(record.session_id, []).append(record)

  async def latest(self, session_id: str) -> CheckpointRecord | None:
    records = self._by_session.get(session_id)
    if not records:
      return None
    return max(records, key=lambda record: record.sequence)

  async def list_for_session(self, session_id: str) -> list[CheckpointRecord]:
    return sorted(self._by_session.get(session_id, []), key=lambda record: record.sequence)

  async def delete(self, checkpoint_ids: list[str]) -> int:
    targets = set(checkpoint_ids)
    removed = 0
    for session_id, records in self._by_session.items():
      kept = [record for record in records if record.checkpoint_id not in targets]
      removed += len(records) - len(kept)
      self._by_session[session_id] = kept
    return removed
