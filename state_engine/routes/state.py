import logging

import redis.asyncio as redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from state_engine.config import settings
from state_engine.dependencies import ActingUser, get_current_user, get_engine
from state_engine.engine import StateEngine
from state_engine.metrics import idempotent_replays_total
from state_engine.models import ErrorCode, Result
from state_engine.redis_client import claim_idempotency_key, get_redis, release_idempotency_key
from state_engine.state_tables import EntityType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/state", tags=["state"], dependencies=[Depends(get_current_user)])

_REDIS_ERRORS = (RedisError, OSError)

_STATUS_BY_ERROR = {
    ErrorCode.TRANSITION_NOT_ALLOWED: 400,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.INVALID_INPUT: 422,
    ErrorCode.INFRASTRUCTURE_UNAVAILABLE: 503,
}


class TransitionBody(BaseModel):
    entity_type: str = Field(..., description="Entity type tag, e.g. agenda or financial")
    entity_id: int = Field(..., gt=0)
    to_state: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, description="Optional free-text reason")


class ForceTransitionBody(TransitionBody):
    reason: str = Field(..., description="Mandatory justification for the override")


def _idempotency_redis_key(body: TransitionBody, key: str) -> str:
    """Keys are scoped to the entity and target so reusing one for another request is not a replay."""
    try:
        kind = EntityType.parse(body.entity_type).value
    except ValueError:
        kind = body.entity_type.strip().lower()
    return f"idempotency:state:{kind}:{body.entity_id}:{body.to_state}:{key}"


def _idempotency_unavailable() -> JSONResponse:
    return _failure_response(
        Result.fail(ErrorCode.INFRASTRUCTURE_UNAVAILABLE, "Idempotency store is unavailable")
    )


def _parse_entity_type(tag: str) -> EntityType:
    try:
        return EntityType.parse(tag)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _failure_response(result: Result) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_ERROR[result.error],
        content={
            "status": "error",
            "error": result.error.value,
            "message": result.message,
            "from_state": result.from_state,
            "to_state": result.to_state,
            "retryable": result.retryable,
        },
    )


def _value_or_failure(result: Result):
    if not result.success:
        return _failure_response(result)
    return result.value


def _transition_response(result: Result) -> JSONResponse:
    if not result.success:
        return _failure_response(result)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "entry": result.value.model_dump(mode="json")},
    )


@router.get("/transitions")
async def list_transitions(
    entity_type: str | None = Query(default=None),
    limit: int = Query(default=settings.transitions_default_limit, ge=1, le=1000),
    engine: StateEngine = Depends(get_engine),
):
    """Most recent transitions across entities, optionally for one entity type."""
    kind = _parse_entity_type(entity_type) if entity_type is not None else None
    return _value_or_failure(await engine.list_transitions(kind, limit))


@router.get("/validate")
async def validate(
    entity_type: str,
    from_state: str | None = None,
    to_state: str = Query(..., min_length=1),
    engine: StateEngine = Depends(get_engine),
) -> dict:
    """Answer whether from_state -> to_state is in the table, without touching any entity."""
    kind = _parse_entity_type(entity_type)
    return {
        "valid": engine.is_valid_transition(kind, from_state, to_state),
        "from_state": from_state,
        "to_state": to_state,
    }


@router.get("/current")
async def list_current_states(
    limit: int = Query(default=settings.current_states_default_limit, ge=1, le=1000),
    engine: StateEngine = Depends(get_engine),
):
    return _value_or_failure(await engine.list_current_states(limit))


@router.post("/transition")
async def update_state(
    body: TransitionBody,
    user: ActingUser = Depends(get_current_user),
    engine: StateEngine = Depends(get_engine),
    r: redis.Redis = Depends(get_redis),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """
    Request a guarded transition. Idempotent when an Idempotency-Key header is sent:
    a replay of an applied request for the same entity and target -> 200 already_processed.
    """
    redis_key = _idempotency_redis_key(body, idempotency_key) if idempotency_key else None
    if redis_key:
        try:
            claimed = await claim_idempotency_key(r, redis_key)
        except _REDIS_ERRORS:
            logger.exception("Idempotency store unavailable, rejecting key=%s", idempotency_key)
            return _idempotency_unavailable()
        if not claimed:
            idempotent_replays_total.inc()
            return JSONResponse(
                status_code=200,
                content={"status": "already_processed", "idempotency_key": idempotency_key},
            )
    result = await engine.transition_state(body.entity_type, body.entity_id, body.to_state, body.reason, user.id)
    if redis_key and not result.success:
        try:
            await release_idempotency_key(r, redis_key)
        except _REDIS_ERRORS:
            # The claim may outlive this failed request; the caller must not assume the key is free.
            logger.exception("Could not release idempotency key=%s", idempotency_key)
            return _idempotency_unavailable()
    return _transition_response(result)


@router.post("/force")
async def force_transition(
    body: ForceTransitionBody,
    user: ActingUser = Depends(get_current_user),
    engine: StateEngine = Depends(get_engine),
) -> JSONResponse:
    """Administrative override of the transition table (admin role only)."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can force state transitions")
    result = await engine.force_transition(body.entity_type, body.entity_id, body.to_state, body.reason, user.id)
    return _transition_response(result)


@router.get("/{entity_type}/{entity_id}")
async def get_entity_state(
    entity_type: str,
    entity_id: int,
    engine: StateEngine = Depends(get_engine),
):
    return _value_or_failure(await engine.get_current_state(entity_type, entity_id))


@router.get("/{entity_type}/{entity_id}/history")
async def get_history(
    entity_type: str,
    entity_id: int,
    limit: int = Query(default=settings.history_default_limit, ge=1, le=1000),
    engine: StateEngine = Depends(get_engine),
):
    return _value_or_failure(await engine.get_state_history(entity_type, entity_id, limit))
