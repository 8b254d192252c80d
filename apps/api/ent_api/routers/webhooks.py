"""Billing event intake.

Error taxonomy (retry storm prevention):
  (A) Malformed body with a valid signature → 400 (ledger entry ``rejected``)
  (B) Signature invalid / expired → 401
  (C) Signature header missing → 400
  (D) Our misconfig (missing webhook secret) → 500 WEBHOOK_PROVIDER_MISCONFIG
  (F) Internal DB/processing error after the ledger write → 500 WEBHOOK_INTERNAL_ERROR
  500 is ONLY for (D)(F). Signature mismatch is NEVER 500.

Idempotent replays, no-op events and dead-lettered events are all 200: the
processor must stop re-delivering them.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ent_api.billing.errors import MalformedPayload, SignatureInvalid, TransientStoreFailure
from ent_api.billing.ingestion import EventIngestor
from ent_api.billing.resync import resync_in_background
from ent_api.config.env import get_stripe_webhook_secret
from ent_api.context import request_id_var
from ent_api.db.session import get_db
from ent_api.schemas import WebhookAck
from ent_api.utils.sanitize import payload_digest, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "stripe"


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions (beyond RFC 9457 base):
      provider, payload_hash, error_code  (safe; never contain raw payload/secrets)
    """
    request_id = request_id_var.get(None)
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "provider": PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:ent:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=response_headers)


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Verify, record and apply one billing event."""
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_digest(raw_body)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": PROVIDER, "payload_hash": payload_hash, "payload_size": len(raw_body)},
    )

    # ── Step 1: Required header (C → 400) ───────────────────────────────────
    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_HEADERS",
            title="Missing required webhook headers",
            detail="Stripe-Signature header is absent",
            payload_hash=payload_hash,
        )

    # ── Step 2: Shared secret (D → 500 on misconfig) ────────────────────────
    try:
        secret = get_stripe_webhook_secret()
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook signing secret is not configured",
            payload_hash=payload_hash,
        )

    # ── Step 3: Verify → parse → ledger → classify → apply ──────────────────
    ingestor: EventIngestor = request.app.state.ingestor
    try:
        result = await run_in_threadpool(ingestor.ingest, db, raw_body, stripe_signature, secret)
    except SignatureInvalid as exc:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=str(exc),
            payload_hash=payload_hash,
        )
    except MalformedPayload as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=sanitize_str(str(exc)),
            payload_hash=payload_hash,
        )
    except (TransientStoreFailure, SQLAlchemyError) as exc:
        db.rollback()
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )

    if result.needs_resync and result.user_id:
        background_tasks.add_task(
            resync_in_background,
            request.app.state.session_factory,
            request.app.state.resync_adapter,
            result.user_id,
        )

    logger.info(
        "WEBHOOK_ACKNOWLEDGED",
        extra={
            "provider": PROVIDER,
            "external_event_id": result.external_event_id,
            "status": result.status,
            "outcome": result.outcome,
        },
    )
    return WebhookAck(status=result.status, event_id=result.external_event_id, outcome=result.outcome)
