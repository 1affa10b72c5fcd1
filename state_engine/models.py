"""
Records owned by the state engine and the result type returned by its operations.
"""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from state_engine.state_tables import EntityType


class CurrentState(BaseModel):
    """Current state row for one entity. current_state is None when the entity never transitioned."""
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: int
    current_state: str | None = None
    allowed_next_states: list[str] = Field(default_factory=list)
    version: int = 0
    updated_at: datetime | None = None

    @property
    def exists(self) -> bool:
        return self.current_state is not None


class TransitionLogEntry(BaseModel):
    """One append-only audit row. forced=True marks an administrative override."""
    model_config = ConfigDict(frozen=True)

    id: int
    entity_type: EntityType
    entity_id: int
    from_state: str | None = None
    to_state: str
    reason: str | None = None
    acting_user_id: int | None = None
    forced: bool = False
    created_at: datetime


class ErrorCode(str, Enum):
    TRANSITION_NOT_ALLOWED = "TRANSITION_NOT_ALLOWED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INFRASTRUCTURE_UNAVAILABLE = "INFRASTRUCTURE_UNAVAILABLE"
    INVALID_INPUT = "INVALID_INPUT"


_RETRYABLE = {ErrorCode.CONCURRENT_MODIFICATION}


class Result(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    value: Any = None
    error: ErrorCode | None = None
    message: str | None = None
    from_state: str | None = None
    to_state: str | None = None

    @property
    def retryable(self) -> bool:
        """True if the caller may retry after re-reading current state."""
        return self.error in _RETRYABLE

    @classmethod
    def ok(cls, value: Any = None) -> "Result":
        return cls(success=True, value=value)

    @classmethod
    def fail(
        cls,
        error: ErrorCode,
        message: str,
        from_state: str | None = None,
        to_state: str | None = None,
    ) -> "Result":
        return cls(success=False, error=error, message=message, from_state=from_state, to_state=to_state)
