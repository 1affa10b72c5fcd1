"""
StateEngine: single authority for validating, executing and recording entity lifecycle transitions.

Reads the entity's current state, validates against the entity type's table, then commits
with a conditional write on the row version read, so a concurrent writer on the same entity
loses with CONCURRENT_MODIFICATION instead of overwriting. Every failure is returned as a
Result; nothing raised by the store crosses this boundary.
"""
import logging
from typing import Iterable, Mapping, Sequence

from state_engine.metrics import state_transitions_rejected_total, state_transitions_total
from state_engine.models import CurrentState, ErrorCode, Result, TransitionLogEntry
from state_engine.state_tables import DEFAULT_TABLES, EntityType, StateTable
from state_engine.store import StateStore, StoreInputError, StoreUnavailableError

logger = logging.getLogger(__name__)

# entity_id columns are 32-bit integers
MAX_ENTITY_ID = 2**31 - 1


class _InvalidInput(Exception):
    pass


class StateEngine:

    def __init__(self, store: StateStore, tables: Mapping[EntityType, StateTable] | None = None):
        self._store = store
        self._tables: dict[EntityType, StateTable] = dict(tables if tables is not None else DEFAULT_TABLES)

    def table(self, entity_type: EntityType | str) -> StateTable:
        try:
            return self._tables[EntityType.parse(entity_type)]
        except KeyError:
            raise ValueError(f"No transition table configured for {entity_type!r}") from None

    def _resolve(self, entity_type: EntityType | str) -> tuple[EntityType, StateTable]:
        try:
            kind = EntityType.parse(entity_type)
            return kind, self.table(kind)
        except ValueError as e:
            raise _InvalidInput(str(e)) from None

    @staticmethod
    def _check_positive(name: str, value: int) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise _InvalidInput(f"{name} must be a positive integer, got {value!r}")

    @classmethod
    def _check_id(cls, name: str, value: int) -> None:
        cls._check_positive(name, value)
        if value > MAX_ENTITY_ID:
            raise _InvalidInput(f"{name} must not exceed {MAX_ENTITY_ID}, got {value!r}")

    # ------------------------------------------------------------------ queries

    def is_valid_transition(self, entity_type: EntityType | str, from_state: str | None, to_state: str) -> bool:
        """Pure table lookup. from_state=None asks whether to_state is an initial state."""
        try:
            return self.table(entity_type).is_valid(from_state, to_state)
        except ValueError:
            return False

    async def get_current_state(self, entity_type: EntityType | str, entity_id: int) -> Result:
        try:
            kind, table = self._resolve(entity_type)
            self._check_id("entity_id", entity_id)
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e))
        try:
            row = await self._store.get_current(kind, entity_id)
        except (StoreUnavailableError, StoreInputError) as e:
            return self._store_failure("get_current_state", e)
        return Result.ok(self._with_table(kind, entity_id, row, table))

    @staticmethod
    def _with_table(kind: EntityType, entity_id: int, row: CurrentState | None, table: StateTable) -> CurrentState:
        if row is None:
            return CurrentState(entity_type=kind, entity_id=entity_id)
        return row.model_copy(update={"allowed_next_states": sorted(table.allowed_from(row.current_state))})

    async def get_state_history(self, entity_type: EntityType | str, entity_id: int, limit: int = 50) -> Result:
        """Transition log for one entity, most recent first, capped at limit."""
        try:
            kind, _ = self._resolve(entity_type)
            self._check_id("entity_id", entity_id)
            self._check_positive("limit", limit)
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e))
        try:
            return Result.ok(await self._store.list_history(kind, entity_id, limit))
        except (StoreUnavailableError, StoreInputError) as e:
            return self._store_failure("get_state_history", e)

    async def list_transitions(self, entity_type: EntityType | str | None = None, limit: int = 100) -> Result:
        try:
            kind = self._resolve(entity_type)[0] if entity_type is not None else None
            self._check_positive("limit", limit)
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e))
        try:
            return Result.ok(await self._store.list_transitions(kind, limit))
        except (StoreUnavailableError, StoreInputError) as e:
            return self._store_failure("list_transitions", e)

    async def list_current_states(self, limit: int = 200) -> Result:
        try:
            self._check_positive("limit", limit)
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e))
        try:
            return Result.ok(await self._store.list_current_states(limit))
        except (StoreUnavailableError, StoreInputError) as e:
            return self._store_failure("list_current_states", e)

    # ------------------------------------------------------------------ writes

    async def transition_state(
        self,
        entity_type: EntityType | str,
        entity_id: int,
        to_state: str,
        reason: str | None = None,
        acting_user_id: int | None = None,
    ) -> Result:
        try:
            kind, table = self._resolve(entity_type)
            self._check_id("entity_id", entity_id)
            if acting_user_id is not None:
                self._check_id("acting_user_id", acting_user_id)
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e))
        return await self._apply(kind, table, entity_id, to_state, reason, acting_user_id, forced=False)

    async def force_transition(
        self,
        entity_type: EntityType | str,
        entity_id: int,
        to_state: str,
        reason: str,
        acting_user_id: int | None,
    ) -> Result:
        """
        Administrative override: skips the legality check but still requires a reason,
        a known target state and the same conditional write. Role checks belong to the caller.
        """
        try:
            kind, table = self._resolve(entity_type)
            self._check_id("entity_id", entity_id)
            if acting_user_id is not None:
                self._check_id("acting_user_id", acting_user_id)
            if not reason or not reason.strip():
                raise _InvalidInput("A reason is required for a forced transition")
            if to_state not in table:
                raise _InvalidInput(f"Unknown state {to_state!r} for {kind.value}")
        except _InvalidInput as e:
            return Result.fail(ErrorCode.INVALID_INPUT, str(e), to_state=to_state)
        return await self._apply(kind, table, entity_id, to_state, reason.strip(), acting_user_id, forced=True)

    async def _apply(
        self,
        kind: EntityType,
        table: StateTable,
        entity_id: int,
        to_state: str,
        reason: str | None,
        acting_user_id: int | None,
        forced: bool,
    ) -> Result:
        try:
            row = await self._store.get_current(kind, entity_id)
            from_state = row.current_state if row is not None else None
            expected_version = row.version if row is not None else None

            if not forced and not table.is_valid(from_state, to_state):
                logger.info(
                    "Rejected transition %s#%s: %s -> %s",
                    kind.value, entity_id, from_state, to_state,
                )
                return self._rejected(
                    kind,
                    ErrorCode.TRANSITION_NOT_ALLOWED,
                    f"Transition {from_state or '(initial)'} -> {to_state} is not allowed for {kind.value}",
                    from_state,
                    to_state,
                )

            entry = await self._store.commit_transition(
                kind,
                entity_id,
                expected_version=expected_version,
                from_state=from_state,
                to_state=to_state,
                allowed_next_states=sorted(table.allowed_from(to_state)),
                reason=reason,
                acting_user_id=acting_user_id,
                forced=forced,
            )
        except (StoreUnavailableError, StoreInputError) as e:
            return self._store_failure("transition", e)

        if entry is None:
            logger.info(
                "Concurrent modification on %s#%s (read version %s), %s -> %s not applied",
                kind.value, entity_id, expected_version, from_state, to_state,
            )
            return self._rejected(
                kind,
                ErrorCode.CONCURRENT_MODIFICATION,
                f"{kind.value}#{entity_id} changed since it was read; re-read and retry",
                from_state,
                to_state,
            )

        if forced:
            logger.warning(
                "Forced transition %s#%s: %s -> %s by user=%s reason=%r",
                kind.value, entity_id, from_state, to_state, acting_user_id, reason,
            )
        else:
            logger.info("Transition %s#%s: %s -> %s", kind.value, entity_id, from_state, to_state)
        state_transitions_total.labels(entity_type=kind.value, forced=str(forced).lower()).inc()
        return Result(success=True, value=entry, from_state=from_state, to_state=to_state)

    # ------------------------------------------------------------------ audit

    def find_walk_violations(
        self, entity_type: EntityType | str, entries: Iterable[TransitionLogEntry]
    ) -> list[TransitionLogEntry]:
        """
        Non-forced log entries that break the valid walk through the table.
        Entries may be given in any order; they are walked oldest first. A forced
        entry is exempt and restarts the walk from its to_state.
        """
        table = self.table(entity_type)
        ordered: Sequence[TransitionLogEntry] = sorted(entries, key=lambda e: (e.created_at, e.id))
        violations = []
        previous: str | None = None
        for entry in ordered:
            if not entry.forced and (entry.from_state != previous or not table.is_valid(entry.from_state, entry.to_state)):
                violations.append(entry)
            previous = entry.to_state
        return violations

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _rejected(
        kind: EntityType, error: ErrorCode, message: str, from_state: str | None, to_state: str
    ) -> Result:
        state_transitions_rejected_total.labels(entity_type=kind.value, error=error.value).inc()
        return Result.fail(error, message, from_state=from_state, to_state=to_state)

    @staticmethod
    def _store_failure(operation: str, error: Exception) -> Result:
        if isinstance(error, StoreInputError):
            logger.info("State store rejected input during %s: %s", operation, error)
            return Result.fail(ErrorCode.INVALID_INPUT, str(error))
        logger.exception("State store unavailable during %s: %s", operation, error)
        return Result.fail(ErrorCode.INFRASTRUCTURE_UNAVAILABLE, "State store is unavailable")
