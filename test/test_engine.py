"""Tests for StateEngine: guarded transitions, forced overrides, history and failure results."""
from datetime import datetime, timedelta, timezone

import pytest

from state_engine.engine import StateEngine
from state_engine.models import ErrorCode, TransitionLogEntry
from state_engine.state_tables import EntityType
from state_engine.store import InMemoryStateStore, StoreInputError, StoreUnavailableError


class UnavailableStore(InMemoryStateStore):

    async def get_current(self, entity_type, entity_id):
        raise StoreUnavailableError("connection refused")

    async def list_history(self, entity_type, entity_id, limit):
        raise StoreUnavailableError("connection refused")


class FailingCommitStore(InMemoryStateStore):

    async def commit_transition(self, *args, **kwargs):
        raise StoreUnavailableError("log insert failed")


class RejectingStore(InMemoryStateStore):

    async def get_current(self, entity_type, entity_id):
        raise StoreInputError("value out of int32 range")


class TestAgendaScenario:

    @pytest.mark.asyncio
    async def test_first_transition_must_be_initial(self, engine: StateEngine) -> None:
        result = await engine.transition_state("agenda", 7, "concluido")
        assert not result.success
        assert result.error is ErrorCode.TRANSITION_NOT_ALLOWED
        assert result.from_state is None
        assert result.to_state == "concluido"

        state = (await engine.get_current_state("agenda", 7)).value
        assert not state.exists

        assert (await engine.transition_state("agenda", 7, "pendente")).success
        state = (await engine.get_current_state("agenda", 7)).value
        assert state.current_state == "pendente"
        assert state.allowed_next_states == ["concluido"]

        assert (await engine.transition_state("agenda", 7, "concluido")).success

    @pytest.mark.asyncio
    async def test_rejected_transition_leaves_state_and_history(self, engine: StateEngine) -> None:
        await engine.transition_state("agenda", 7, "pendente")
        await engine.transition_state("agenda", 7, "concluido")

        result = await engine.transition_state("agenda", 7, "pendente")
        assert result.error is ErrorCode.TRANSITION_NOT_ALLOWED
        assert result.from_state == "concluido"
        assert not result.retryable

        state = (await engine.get_current_state("agenda", 7)).value
        assert state.current_state == "concluido"
        assert len((await engine.get_state_history("agenda", 7, 50)).value) == 2

    @pytest.mark.asyncio
    async def test_forced_transition_bypasses_table(self, engine: StateEngine) -> None:
        await engine.transition_state("agenda", 7, "pendente")
        await engine.transition_state("agenda", 7, "concluido")
        assert not engine.is_valid_transition("agenda", "concluido", "pendente")

        result = await engine.force_transition("agenda", 7, "pendente", "manual correction", acting_user_id=3)
        assert result.success

        history = (await engine.get_state_history("agenda", 7, 50)).value
        assert len(history) == 3
        latest = history[0]
        assert latest.forced
        assert latest.reason == "manual correction"
        assert latest.acting_user_id == 3
        assert latest.from_state == "concluido"
        assert not any(e.forced for e in history[1:])


class TestValidation:

    def test_tables_are_isolated_per_entity_type(self, engine: StateEngine) -> None:
        assert engine.is_valid_transition("financial", "pendente", "pago")
        assert not engine.is_valid_transition("agenda", "pendente", "pago")

    def test_unknown_states_and_types_yield_false(self, engine: StateEngine) -> None:
        assert not engine.is_valid_transition("agenda", "nope", "concluido")
        assert not engine.is_valid_transition("invoice", "pendente", "pago")
        # configured in DEFAULT_TABLES but not in the fixture tables
        assert not engine.is_valid_transition("client", None, "ativo")

    @pytest.mark.asyncio
    async def test_validation_ignores_persisted_history(self, engine: StateEngine, store) -> None:
        before = engine.is_valid_transition("agenda", "pendente", "concluido")
        await engine.transition_state("agenda", 1, "pendente")
        await engine.transition_state("agenda", 1, "concluido")
        assert engine.is_valid_transition("agenda", "pendente", "concluido") == before
        assert len(await store.list_transitions(None, 100)) == 2

    @pytest.mark.asyncio
    async def test_guarded_write_matches_table(self, engine: StateEngine) -> None:
        targets = ["review", "approved", "draft", "approved", "review", "approved", "draft"]
        for to_state in targets:
            current = (await engine.get_current_state("document", 4)).value
            expected = engine.is_valid_transition("document", current.current_state, to_state)
            result = await engine.transition_state("document", 4, to_state)
            assert result.success == expected
            after = (await engine.get_current_state("document", 4)).value
            if not expected:
                assert after.current_state == current.current_state

    @pytest.mark.asyncio
    async def test_unknown_entity_type_is_invalid_input(self, engine: StateEngine) -> None:
        result = await engine.transition_state("invoice", 1, "pago")
        assert result.error is ErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_non_positive_ids_and_limits_are_invalid_input(self, engine: StateEngine) -> None:
        assert (await engine.get_current_state("agenda", 0)).error is ErrorCode.INVALID_INPUT
        assert (await engine.get_state_history("agenda", 1, 0)).error is ErrorCode.INVALID_INPUT
        assert (await engine.list_transitions(limit=-1)).error is ErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_ids_beyond_column_range_are_invalid_input(self) -> None:
        store = FailingCommitStore()
        engine = StateEngine(store)
        too_big = 2**31
        assert (await engine.transition_state("agenda", too_big, "pendente")).error is ErrorCode.INVALID_INPUT
        assert (await engine.get_current_state("agenda", too_big)).error is ErrorCode.INVALID_INPUT
        assert (await engine.get_state_history("agenda", too_big)).error is ErrorCode.INVALID_INPUT
        forced = await engine.force_transition("agenda", 1, "pendente", "fix", acting_user_id=too_big)
        assert forced.error is ErrorCode.INVALID_INPUT
        assert (await engine.get_current_state("agenda", 2**31 - 1)).success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "   ", None])
    async def test_force_requires_reason(self, reason) -> None:
        store = FailingCommitStore()
        engine = StateEngine(store)
        result = await engine.force_transition("agenda", 1, "pendente", reason, acting_user_id=1)
        assert result.error is ErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_force_rejects_unknown_state(self, engine: StateEngine) -> None:
        result = await engine.force_transition("agenda", 1, "archived", "cleanup", acting_user_id=1)
        assert result.error is ErrorCode.INVALID_INPUT
        assert not (await engine.get_current_state("agenda", 1)).value.exists


class TestHistory:

    @pytest.mark.asyncio
    async def test_history_is_most_recent_first(self, engine: StateEngine) -> None:
        steps = ["draft", "review", "draft", "review", "approved"]
        for to_state in steps:
            assert (await engine.transition_state("document", 2, to_state, reason=f"to {to_state}", acting_user_id=5)).success

        history = (await engine.get_state_history("document", 2, 50)).value
        assert len(history) == len(steps)
        assert [e.to_state for e in history] == list(reversed(steps))
        assert [e.from_state for e in history] == list(reversed([None, *steps[:-1]]))
        assert all(e.acting_user_id == 5 for e in history)
        assert engine.find_walk_violations("document", history) == []

    @pytest.mark.asyncio
    async def test_history_respects_limit_and_entity(self, engine: StateEngine) -> None:
        for to_state in ["draft", "review", "approved"]:
            await engine.transition_state("document", 1, to_state)
        await engine.transition_state("document", 2, "draft")
        await engine.transition_state("agenda", 1, "pendente")

        history = (await engine.get_state_history("document", 1, 2)).value
        assert [e.to_state for e in history] == ["approved", "review"]

        recent = (await engine.list_transitions(EntityType.DOCUMENT, 100)).value
        assert len(recent) == 4
        assert len((await engine.list_transitions(limit=100)).value) == 5

    @pytest.mark.asyncio
    async def test_current_states_listing(self, engine: StateEngine) -> None:
        await engine.transition_state("agenda", 1, "pendente")
        await engine.transition_state("financial", 1, "pendente")
        rows = (await engine.list_current_states(10)).value
        assert {(r.entity_type, r.current_state) for r in rows} == {
            (EntityType.AGENDA, "pendente"),
            (EntityType.FINANCIAL, "pendente"),
        }


class TestWalkViolations:

    def _entry(self, id, from_state, to_state, forced=False) -> TransitionLogEntry:
        return TransitionLogEntry(
            id=id,
            entity_type=EntityType.AGENDA,
            entity_id=1,
            from_state=from_state,
            to_state=to_state,
            forced=forced,
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=id),
        )

    def test_forced_entries_are_exempt(self, engine: StateEngine) -> None:
        entries = [
            self._entry(1, None, "pendente"),
            self._entry(2, "pendente", "concluido"),
            self._entry(3, "concluido", "pendente", forced=True),
            self._entry(4, "pendente", "concluido"),
        ]
        assert engine.find_walk_violations("agenda", entries) == []

    def test_broken_chain_is_reported(self, engine: StateEngine) -> None:
        entries = [
            self._entry(1, None, "pendente"),
            self._entry(2, "concluido", "pendente"),
        ]
        assert [e.id for e in engine.find_walk_violations("agenda", entries)] == [2]


class TestInfrastructureFailures:

    @pytest.mark.asyncio
    async def test_unreachable_store_is_reported_not_raised(self) -> None:
        engine = StateEngine(UnavailableStore())
        for result in (
            await engine.get_current_state("agenda", 1),
            await engine.transition_state("agenda", 1, "pendente"),
            await engine.get_state_history("agenda", 1),
        ):
            assert not result.success
            assert result.error is ErrorCode.INFRASTRUCTURE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_value_rejected_by_store_is_invalid_input(self) -> None:
        engine = StateEngine(RejectingStore())
        result = await engine.transition_state("agenda", 1, "pendente")
        assert result.error is ErrorCode.INVALID_INPUT
        assert not result.retryable
        assert (await engine.get_current_state("agenda", 1)).error is ErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_failed_commit_changes_nothing(self) -> None:
        store = FailingCommitStore()
        engine = StateEngine(store)
        result = await engine.transition_state("agenda", 1, "pendente")
        assert result.error is ErrorCode.INFRASTRUCTURE_UNAVAILABLE
        assert not (await engine.get_current_state("agenda", 1)).value.exists
        assert await store.list_history(EntityType.AGENDA, 1, 10) == []
