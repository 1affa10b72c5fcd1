"""
Shared fixtures: small fixture transition tables, an in-memory store and an engine over them.
"""
import pytest

from state_engine.engine import StateEngine
from state_engine.state_tables import EntityType, StateTable
from state_engine.store import InMemoryStateStore

FIXTURE_TABLES = {
    EntityType.AGENDA: StateTable({
        None: ["pendente"],
        "pendente": ["concluido"],
        "concluido": [],
    }),
    EntityType.FINANCIAL: StateTable({
        None: ["pendente"],
        "pendente": ["pago"],
        "pago": [],
    }),
    EntityType.DOCUMENT: StateTable({
        None: ["draft"],
        "draft": ["review"],
        "review": ["draft", "approved"],
        "approved": [],
    }),
}


class FakeRedis:
    """Minimal async stand-in for the two Redis calls the idempotency check makes."""

    def __init__(self):
        self.data: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def engine(store) -> StateEngine:
    return StateEngine(store, FIXTURE_TABLES)


@pytest.fixture
def tables():
    return FIXTURE_TABLES


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
