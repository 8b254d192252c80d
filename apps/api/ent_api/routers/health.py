"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from ent_api import __version__

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database(request: Request) -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis(request: Request) -> str:
    """Check Redis connectivity (only when the Redis backend is configured).

    Returns:
        str: "up" if healthy, "skipped" if unused, error message otherwise
    """
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        return "skipped"
    try:
        redis_client.ping()
        return "up"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
def health(request: Request, response: Response) -> HealthResponse:
    """Liveness + dependency connectivity. 503 when any dependency is down."""
    services = {
        "database": check_database(request),
        "redis": check_redis(request),
    }
    healthy = all(value in ("up", "skipped") for value in services.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(status="healthy" if healthy else "degraded", version=__version__, services=services)
