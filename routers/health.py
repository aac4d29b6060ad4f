from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from logging_config import get_logger
from schemas.health import HealthResponse, StatsResponse

logger = get_logger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/healthcheck", response_class=PlainTextResponse)
async def healthcheck():
    # The hosting platform's liveness check expects a plain "ok"
    return "ok"


@health_router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")


@health_router.get("/stats", response_model=StatsResponse)
async def stats(request: Request):
    """Counts of live sessions and attached connections. Read-only."""
    registry = request.app.state.registry
    counts = await registry.stats()
    logger.debug(f"Stats requested from {request.client.host if request.client else 'unknown'}: {counts}")
    return StatsResponse(**counts)
