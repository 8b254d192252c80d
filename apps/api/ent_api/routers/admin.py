"""Admin endpoints for operational recovery.

WARNING: These endpoints are for authorized operators only.
- Protected by ADMIN_TOKEN header
- All actions are logged
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ent_api.billing import ledger
from ent_api.billing.errors import ProviderError, TransientStoreFailure
from ent_api.billing.ingestion import EventIngestor
from ent_api.billing.reconciliation import ReconciliationResult
from ent_api.billing.resync import ResyncAdapter
from ent_api.config.env import get_admin_token
from ent_api.context import request_id_var
from ent_api.db.session import get_db
from ent_api.schemas import DeadLetterItem, DeadLetterList, ReplayResponse

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ============================================================================
# Admin Token Verification
# ============================================================================


def require_admin(x_admin_token: str = Header(..., alias="X-Admin-Token")) -> None:
    """Verify admin token using constant-time comparison.

    Raises:
        HTTPException 401: If token is invalid
        HTTPException 500: If ADMIN_TOKEN not configured
    """
    expected_token = get_admin_token()
    if expected_token is None:
        logger.error("Admin token not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not secrets.compare_digest(x_admin_token.encode(), expected_token.encode()):
        logger.warning(
            "ADMIN_AUTH_FAILED",
            extra={"request_id": request_id_var.get()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )


# ============================================================================
# Resync
# ============================================================================


@router.post("/resync/{user_id}", response_model=ReconciliationResult, dependencies=[Depends(require_admin)])
async def resync_user(user_id: str, request: Request, db: Session = Depends(get_db)) -> ReconciliationResult:
    """Pull the user's subscription truth from the processor and apply it."""
    adapter: ResyncAdapter | None = request.app.state.resync_adapter
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processor API is not configured (STRIPE_SECRET_KEY)",
        )

    logger.info("ADMIN_RESYNC_REQUESTED", extra={"user_id": user_id})
    try:
        return await adapter.resync(db, user_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No subscription record for {user_id}")
    except ProviderError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Processor API request failed",
        )
    except TransientStoreFailure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription store unavailable",
            headers={"Retry-After": "5"},
        )


# ============================================================================
# Dead letters
# ============================================================================


@router.get("/dead-letters", response_model=DeadLetterList, dependencies=[Depends(require_admin)])
def get_dead_letters(limit: int = 100, db: Session = Depends(get_db)) -> DeadLetterList:
    """Dead-lettered ledger entries, newest first."""
    entries = ledger.list_dead_letters(db, limit=min(max(limit, 1), 500))
    items = [
        DeadLetterItem(
            external_event_id=e.external_event_id,
            provider_type=e.provider_type,
            canonical_type=e.canonical_type,
            received_at=e.received_at,
            processed_at=e.processed_at,
            attempts=e.attempts,
            last_error=e.last_error,
            raw_payload_digest=e.raw_payload_digest,
        )
        for e in entries
    ]
    return DeadLetterList(items=items, count=len(items))


@router.post(
    "/dead-letters/{event_id}/replay",
    response_model=ReplayResponse,
    dependencies=[Depends(require_admin)],
)
def replay_dead_letter(event_id: str, request: Request, db: Session = Depends(get_db)) -> ReplayResponse:
    """Reopen a dead-lettered event and run it through ingestion again.

    A replay that fails transiently stays pending and is picked up by the
    retry sweep.
    """
    entry = ledger.get_entry(db, event_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown event {event_id}")
    if not ledger.reopen_for_replay(db, event_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Event {event_id} is not dead-lettered (outcome={entry.outcome})",
        )

    logger.info("ADMIN_REPLAY_REQUESTED", extra={"external_event_id": event_id})
    ingestor: EventIngestor = request.app.state.ingestor
    entry = ledger.get_entry(db, event_id)
    try:
        result = ingestor.process_entry(db, entry)
    except TransientStoreFailure:
        return ReplayResponse(event_id=event_id, status="pending")
    return ReplayResponse(event_id=event_id, status=result.status, outcome=result.outcome)
