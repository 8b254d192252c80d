"""Internal endpoints consumed by feature code (posts, comments, signup).

WARNING: These endpoints are NOT for public use; they are reachable only
from inside the cluster network.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from ent_api.billing.entitlements import ACTIONS, can_perform, check_post_limits, resolve_entitlements
from ent_api.billing.errors import TransientStoreFailure
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.db.session import get_db
from ent_api.problem_details import PROBLEM_BASE_URI, create_problem_details_response
from ent_api.ratelimit import RateLimitStore, check_rate_limit
from ent_api.schemas import (
    EntitlementResponse,
    PostLimitsRequest,
    PostLimitsResponse,
    RateLimitCheckRequest,
    RateLimitCheckResponse,
    SubscriptionRecordResponse,
    ViolatedPolicy,
)

router = APIRouter(prefix="/internal", tags=["internal"])
logger = logging.getLogger(__name__)


# ============================================================================
# Entitlements
# ============================================================================


@router.get("/entitlements/{user_id}", response_model=EntitlementResponse)
def get_entitlements(user_id: str, db: Session = Depends(get_db)) -> EntitlementResponse:
    """Resolve the user's current entitlements (recomputed on every call)."""
    entitlement = resolve_entitlements(db, user_id)
    return EntitlementResponse(
        user_id=user_id,
        **entitlement.model_dump(),
        actions={action: can_perform(entitlement, action) for action in ACTIONS},
    )


@router.post("/entitlements/{user_id}/post-limits", response_model=PostLimitsResponse)
def check_post(user_id: str, body: PostLimitsRequest, db: Session = Depends(get_db)) -> PostLimitsResponse:
    """Check a prospective post against the user's limits.

    Violations are an ordinary answer (200), not an error.
    """
    entitlement = resolve_entitlements(db, user_id)
    violations = check_post_limits(
        entitlement,
        text_length=body.text_length,
        images=body.images,
        videos=body.videos,
        video_sizes=tuple(body.video_sizes),
    )
    return PostLimitsResponse(allowed=not violations, violations=violations)


# ============================================================================
# Rate limits
# ============================================================================


@router.post(
    "/rate-limit/check",
    response_model=RateLimitCheckResponse,
    responses={429: {"description": "Rate limit exceeded (application/problem+json)"}},
)
def rate_limit_check(body: RateLimitCheckRequest, request: Request):
    """Check-and-increment one action for one user (200 allow / 429 deny)."""
    store: RateLimitStore = request.app.state.rate_limit_store
    explicit = body.limit is not None
    if explicit != (body.window_seconds is not None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="limit and window_seconds must be given together",
        )

    try:
        if explicit:
            decision = store.check_and_increment(body.user_id, body.action, body.limit, body.window_seconds)
        else:
            decision = check_rate_limit(store, body.user_id, body.action)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TransientStoreFailure as e:
        logger.error("RATE_LIMIT_STORE_UNAVAILABLE", extra={"error_type": type(e).__name__})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limit store unavailable",
            headers={"Retry-After": "5"},
        )

    if not decision.allowed:
        retry_after = decision.retry_after_seconds
        return create_problem_details_response(
            type_uri=f"{PROBLEM_BASE_URI}:rate-limit-exceeded",
            title="Too Many Requests",
            status=429,
            detail=f"Limit of {decision.limit} per {decision.window_seconds}s exceeded for {body.action}",
            violated_policies=[
                ViolatedPolicy(
                    policy=body.action,
                    limit=decision.limit,
                    current=decision.limit,
                    window_seconds=decision.window_seconds,
                )
            ],
            headers={"Retry-After": str(retry_after)},
        )

    return RateLimitCheckResponse(**decision.model_dump())


# ============================================================================
# Signup hook
# ============================================================================


@router.post("/users/{user_id}/subscription", response_model=SubscriptionRecordResponse)
def create_subscription_record(user_id: str, request: Request, response: Response, db: Session = Depends(get_db)):
    """Create the implicit free record for a new user (idempotent)."""
    engine: ReconciliationEngine = request.app.state.reconciliation_engine
    try:
        created = engine.ensure_record(db, user_id)
    except TransientStoreFailure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription store unavailable",
            headers={"Retry-After": "5"},
        )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return SubscriptionRecordResponse(user_id=user_id, created=created)
