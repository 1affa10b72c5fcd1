"""
Async Postgres: state_logs (append-only transition log) + state_transitions (current state per entity).
Each transition runs in a single transaction: conditional upsert on the row version, then log insert.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from state_engine.config import settings
from state_engine.models import CurrentState, TransitionLogEntry
from state_engine.state_tables import EntityType
from state_engine.store import StateStore, StoreInputError, StoreUnavailableError

_pool: asyncpg.Pool | None = None
_pool_lock: asyncio.Lock | None = None

# asyncpg raises its client-side DataError (an InterfaceError and a ValueError) when an
# argument cannot be encoded, and asyncpg.DataError for SQLSTATE class 22 from the server.
_INPUT_ERRORS = (asyncpg.DataError, ValueError)
_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError)


async def get_pool() -> asyncpg.Pool:
    global _pool, _pool_lock
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    async with _pool_lock:
        if _pool is None:
            try:
                _pool = await asyncpg.create_pool(
                    settings.database_url,
                    min_size=1,
                    max_size=5,
                    command_timeout=60,
                )
            except _DB_ERRORS as e:
                raise StoreUnavailableError(f"Cannot connect to database: {e}") from e
    return _pool


async def close_pool() -> None:
    global _pool, _pool_lock
    if _pool is not None:
        await _pool.close()
        _pool = None
    _pool_lock = None


async def init_schema(pool: asyncpg.Pool) -> None:
    try:
        await _create_tables(pool)
    except _DB_ERRORS as e:
        raise StoreUnavailableError(f"Cannot initialise schema: {e}") from e


async def _create_tables(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS state_transitions (
                id SERIAL PRIMARY KEY,
                entity_type VARCHAR(50) NOT NULL,
                entity_id INT NOT NULL,
                current_state VARCHAR(50) NOT NULL,
                allowed_next_states JSONB NOT NULL,
                version INT NOT NULL DEFAULT 1,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                UNIQUE(entity_type, entity_id)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS state_logs (
                id BIGSERIAL PRIMARY KEY,
                entity_type VARCHAR(50) NOT NULL,
                entity_id INT NOT NULL,
                from_state VARCHAR(50),
                to_state VARCHAR(50) NOT NULL,
                reason TEXT,
                user_id INT,
                forced BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_state_logs_entity
            ON state_logs(entity_type, entity_id, created_at DESC);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_state_logs_created_at
            ON state_logs(created_at DESC);
        """)


def _current_from_row(row: asyncpg.Record) -> CurrentState:
    return CurrentState(
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        current_state=row["current_state"],
        allowed_next_states=json.loads(row["allowed_next_states"]),
        version=row["version"],
        updated_at=row["updated_at"],
    )


def _log_from_row(row: asyncpg.Record) -> TransitionLogEntry:
    return TransitionLogEntry(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        from_state=row["from_state"],
        to_state=row["to_state"],
        reason=row["reason"],
        acting_user_id=row["user_id"],
        forced=row["forced"],
        created_at=row["created_at"],
    )


class PostgresStateStore(StateStore):

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _INPUT_ERRORS as e:
            raise StoreInputError(str(e)) from e
        except _DB_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def get_current(self, entity_type: EntityType, entity_id: int) -> CurrentState | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT entity_type, entity_id, current_state, allowed_next_states, version, updated_at
                FROM state_transitions WHERE entity_type = $1 AND entity_id = $2;
                """,
                entity_type.value,
                entity_id,
            )
        return _current_from_row(row) if row is not None else None

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
        allowed_json = json.dumps(allowed_next_states)
        async with self._connection() as conn:
            async with conn.transaction():
                if expected_version is None:
                    written = await conn.fetchval(
                        """
                        INSERT INTO state_transitions (entity_type, entity_id, current_state, allowed_next_states, version, updated_at)
                        VALUES ($1, $2, $3, $4::jsonb, 1, NOW())
                        ON CONFLICT (entity_type, entity_id) DO NOTHING
                        RETURNING id;
                        """,
                        entity_type.value,
                        entity_id,
                        to_state,
                        allowed_json,
                    )
                else:
                    written = await conn.fetchval(
                        """
                        UPDATE state_transitions
                        SET current_state = $3, allowed_next_states = $4::jsonb, version = version + 1, updated_at = NOW()
                        WHERE entity_type = $1 AND entity_id = $2 AND version = $5
                        RETURNING id;
                        """,
                        entity_type.value,
                        entity_id,
                        to_state,
                        allowed_json,
                        expected_version,
                    )
                if written is None:
                    # Another writer got there first; nothing written, transaction commits empty.
                    return None

                row = await conn.fetchrow(
                    """
                    INSERT INTO state_logs (entity_type, entity_id, from_state, to_state, reason, user_id, forced, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
                    RETURNING *;
                    """,
                    entity_type.value,
                    entity_id,
                    from_state,
                    to_state,
                    reason,
                    acting_user_id,
                    forced,
                )
        return _log_from_row(row)

    async def list_history(self, entity_type: EntityType, entity_id: int, limit: int) -> list[TransitionLogEntry]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM state_logs
                WHERE entity_type = $1 AND entity_id = $2
                ORDER BY created_at DESC, id DESC
                LIMIT $3;
                """,
                entity_type.value,
                entity_id,
                limit,
            )
        return [_log_from_row(r) for r in rows]

    async def list_transitions(self, entity_type: EntityType | None, limit: int) -> list[TransitionLogEntry]:
        async with self._connection() as conn:
            if entity_type is None:
                rows = await conn.fetch(
                    "SELECT * FROM state_logs ORDER BY created_at DESC, id DESC LIMIT $1;",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM state_logs WHERE entity_type = $1
                    ORDER BY created_at DESC, id DESC LIMIT $2;
                    """,
                    entity_type.value,
                    limit,
                )
        return [_log_from_row(r) for r in rows]

    async def list_current_states(self, limit: int) -> list[CurrentState]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT entity_type, entity_id, current_state, allowed_next_states, version, updated_at
                FROM state_transitions ORDER BY updated_at DESC LIMIT $1;
                """,
                limit,
            )
        return [_current_from_row(r) for r in rows]

    async def close(self) -> None:
        await close_pool()
