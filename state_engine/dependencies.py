"""
FastAPI dependencies: the shared StateEngine and the acting user.
"""
import asyncio

from fastapi import Header, HTTPException
from pydantic import BaseModel

from state_engine.config import settings
from state_engine.db import PostgresStateStore, get_pool, init_schema
from state_engine.engine import StateEngine
from state_engine.store import InMemoryStateStore, StateStore

_engine: StateEngine | None = None
_store: StateStore | None = None
_engine_lock: asyncio.Lock | None = None


async def get_engine() -> StateEngine:
    global _engine, _store, _engine_lock
    if _engine is not None:
        return _engine
    if _engine_lock is None:
        _engine_lock = asyncio.Lock()
    # Concurrent first requests wait here so the pool and schema are set up once.
    async with _engine_lock:
        if _engine is None:
            if settings.store_backend == "memory":
                store = InMemoryStateStore()
            else:
                pool = await get_pool()
                await init_schema(pool)
                store = PostgresStateStore(pool)
            _store = store
            _engine = StateEngine(store)
    return _engine


async def close_engine() -> None:
    global _engine, _store, _engine_lock
    if _store is not None:
        await _store.close()
    _engine = None
    _store = None
    _engine_lock = None


class ActingUser(BaseModel):
    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    x_user_id: int | None = Header(default=None),
    x_user_role: str = Header(default="user"),
) -> ActingUser:
    """Acting user as forwarded by the authentication layer."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return ActingUser(id=x_user_id, role=x_user_role.strip().lower())
