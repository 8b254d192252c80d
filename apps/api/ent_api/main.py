"""Entitlement Engine API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from typing import Optional

import redis
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from ent_api import __version__
from ent_api.billing.classifier import EventClassifier
from ent_api.billing.ingestion import EventIngestor
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.billing.resync import ResyncAdapter
from ent_api.billing.stripe_client import StripeClient, get_stripe_client
from ent_api.config.env import (
    get_price_tier_map,
    get_rate_limit_backend,
    get_retry_base_delay_seconds,
    get_retry_max_attempts,
    get_webhook_tolerance_seconds,
)
from ent_api.context import event_id_var, request_id_var, user_id_var
from ent_api.db.engine import build_engine, build_sessionmaker
from ent_api.db.redis_client import build_redis_client
from ent_api.problem_details import PROBLEM_BASE_URI, create_problem_details_response
from ent_api.ratelimit import build_rate_limit_store
from ent_api.routers import admin, health, internal, webhooks
from ent_api.utils import configure_json_logging

logger = logging.getLogger(__name__)


def create_app(
    *,
    engine: Optional[Engine] = None,
    session_factory: Optional[sessionmaker[Session]] = None,
    redis_client: Optional[redis.Redis] = None,
    stripe_client: Optional[StripeClient] = None,
    rate_limit_backend: Optional[str] = None,
) -> FastAPI:
    """Build the application and its service graph.

    Every collaborator (database, Redis, processor client) is constructed
    once here and handed to the components that need it; tests pass their
    own instances.
    """
    app = FastAPI(
        title="Entitlement Engine API",
        description="Billing event reconciliation, entitlement resolution and rate limiting.",
        version=__version__,
    )

    # ── Service graph ────────────────────────────────────────────────────────
    engine = engine or build_engine()
    session_factory = session_factory or build_sessionmaker(engine)
    backend = rate_limit_backend or get_rate_limit_backend()
    if backend == "redis" and redis_client is None:
        redis_client = build_redis_client()

    classifier = EventClassifier(get_price_tier_map())
    reconciliation_engine = ReconciliationEngine()

    if stripe_client is None:
        try:
            stripe_client = get_stripe_client()
        except ValueError:
            logger.warning("STRIPE_SECRET_KEY not set; resync is disabled")

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.reconciliation_engine = reconciliation_engine
    app.state.ingestor = EventIngestor(
        classifier,
        reconciliation_engine,
        tolerance_seconds=get_webhook_tolerance_seconds(),
        max_attempts=get_retry_max_attempts(),
        base_delay_seconds=get_retry_base_delay_seconds(),
    )
    app.state.resync_adapter = (
        ResyncAdapter(stripe_client, classifier, reconciliation_engine) if stripe_client is not None else None
    )
    app.state.rate_limit_store = build_rate_limit_store(
        backend, session_factory, redis_factory=(lambda: redis_client) if redis_client is not None else None
    )

    _install_middleware(app)
    _install_exception_handlers(app)

    app.include_router(health.router, tags=["health"])
    app.include_router(webhooks.router)
    app.include_router(internal.router)
    app.include_router(admin.router)
    return app


# ============================================================================
# Middleware
# ============================================================================


def _install_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def http_completion_logging_middleware(request: Request, call_next):
        """Log every HTTP request completion (request_id, method, path, status, duration).

        Clears per-request contextvars at start and end to prevent leakage.
        """
        user_id_var.set("")
        event_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500  # Default to 500 in case of unhandled exception

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            user_id_var.set("")
            event_id_var.set("")

    # Registered last, so outermost: request_id is set before inner middleware runs
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Accept X-Request-ID or generate one; echo it on the response."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        409: "Conflict",
        422: "Unprocessable Entity",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """HTTP exceptions as application/problem+json (no {"detail": ...} wrapper)."""
        return create_problem_details_response(
            type_uri=f"{PROBLEM_BASE_URI}:http-{exc.status_code}",
            title=_get_title_for_status(exc.status_code),
            status=exc.status_code,
            detail=exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code),
            headers=dict(exc.headers) if exc.headers else None,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Request validation errors as 422 problem+json."""
        first_error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        return create_problem_details_response(
            type_uri=f"{PROBLEM_BASE_URI}:validation-error",
            title="Request Validation Failed",
            status=422,
            detail=f"Invalid field '{field}': {msg}",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Uncaught exceptions as 500 problem+json; the exception is logged."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return create_problem_details_response(
            type_uri=f"{PROBLEM_BASE_URI}:internal-error",
            title="Internal Server Error",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred. Please try again later.",
        )


# Set ENT_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("ENT_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))


app = create_app()
