import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from state_engine.config import settings
from state_engine.dependencies import close_engine, get_engine
from state_engine.metrics import get_metrics_bytes, get_metrics_content_type
from state_engine.redis_client import close_redis, get_redis
from state_engine.routes import state
from state_engine.store import StoreUnavailableError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    try:
        await get_engine()
    except StoreUnavailableError as e:
        # Requests will retry the connection and answer 503 until the store is reachable.
        logger.error("State store unavailable at startup: %s", e)
    yield
    await close_engine()
    await close_redis()


app = FastAPI(title="Lifecycle State Engine", lifespan=lifespan)
app.include_router(state.router)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "error", "error": "INFRASTRUCTURE_UNAVAILABLE", "message": "State store is unavailable"},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: committed and rejected state transitions."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
