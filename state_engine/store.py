"""
Persistence collaborator for the state engine: current state per entity + append-only transition log.
commit_transition applies the conditional state write and the log append as one unit.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from state_engine.models import CurrentState, TransitionLogEntry
from state_engine.state_tables import EntityType


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or a statement fails."""


class StoreInputError(Exception):
    """Raised when the backing store rejects a value, e.g. an id outside the column range."""


class StateStore(ABC):

    @abstractmethod
    async def get_current(self, entity_type: EntityType, entity_id: int) -> CurrentState | None:
        ...

    @abstractmethod
    async def commit_transition(
        self,
        entity_type: EntityType,
        entity_id: int,
        expected_version: int | None,
        from_state: str | None,
        to_state: str,
        allowed_next_states: list[str],
        reason: str | None,
        acting_user_id: int | None,
        forced: bool = False,
    ) -> TransitionLogEntry | None:
        """
        Upsert the current state row and append a log entry atomically.
        expected_version=None means the row must not exist yet; otherwise the row's
        version must still equal expected_version. Returns None (nothing written) when
        that condition no longer holds.
        """

    @abstractmethod
    async def list_history(self, entity_type: EntityType, entity_id: int, limit: int) -> list[TransitionLogEntry]:
        """Log entries for one entity, most recent first."""

    @abstractmethod
    async def list_transitions(self, entity_type: EntityType | None, limit: int) -> list[TransitionLogEntry]:
        """Log entries across entities, most recent first."""

    @abstractmethod
    async def list_current_states(self, limit: int) -> list[CurrentState]:
        """Current state rows, most recently updated first."""

    async def close(self) -> None:
        return None


class InMemoryStateStore(StateStore):
    """Dict-backed store. Writes are serialized by an asyncio.Lock."""

    def __init__(self) -> None:
        self._current: dict[tuple[EntityType, int], CurrentState] = {}
        self._log: list[TransitionLogEntry] = []
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def get_current(self, entity_type: EntityType, entity_id: int) -> CurrentState | None:
        return self._current.get((entity_type, entity_id))

    async def commit_transition(
        self,
        entity_type: EntityType,
        entity_id: int,
        expected_version: int | None,
        from_state: str | None,
        to_state: str,
        allowed_next_states: list[str],
        reason: str | None,
        acting_user_id: int | None,
        forced: bool = False,
    ) -> TransitionLogEntry | None:
        key = (entity_type, entity_id)
        async with self._lock:
            existing = self._current.get(key)
            stored_version = existing.version if existing is not None else None
            if stored_version != expected_version:
                return None

            now = datetime.now(timezone.utc)
            entry = TransitionLogEntry(
                id=self._next_id,
                entity_type=entity_type,
                entity_id=entity_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                acting_user_id=acting_user_id,
                forced=forced,
                created_at=now,
            )
            self._current[key] = CurrentState(
                entity_type=entity_type,
                entity_id=entity_id,
                current_state=to_state,
                allowed_next_states=list(allowed_next_states),
                version=(stored_version or 0) + 1,
                updated_at=now,
            )
            self._log.append(entry)
            self._next_id += 1
            return entry

    async def list_history(self, entity_type: EntityType, entity_id: int, limit: int) -> list[TransitionLogEntry]:
        entries = [e for e in self._log if e.entity_type == entity_type and e.entity_id == entity_id]
        return list(reversed(entries))[:limit]

    async def list_transitions(self, entity_type: EntityType | None, limit: int) -> list[TransitionLogEntry]:
        entries = [e for e in self._log if entity_type is None or e.entity_type == entity_type]
        return list(reversed(entries))[:limit]

    async def list_current_states(self, limit: int) -> list[CurrentState]:
        rows = sorted(self._current.values(), key=lambda r: r.updated_at, reverse=True)
        return rows[:limit]
