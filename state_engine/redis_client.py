import redis.asyncio as redis
from state_engine.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_idempotency_key(r: redis.Redis, key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this caller claimed the key (first request), False if it was already claimed.
    Uses SET NX EX: set if not exists, with expiry.
    """
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds or settings.idempotency_ttl_seconds)
    return bool(was_set)


async def release_idempotency_key(r: redis.Redis, key: str) -> None:
    """Drop a claim so a failed request can be retried with the same key."""
    await r.delete(key)
