"""Request and response schemas for the HTTP surface."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


class ViolatedPolicy(BaseModel):
    """Violated limit (RFC 9457 extension member ``violated-policies``)."""

    policy: str
    limit: int
    current: int
    window_seconds: Optional[int] = None


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    status: str
    event_id: str
    outcome: Optional[str] = None


# ============================================================================
# Internal (feature code)
# ============================================================================


class EntitlementResponse(BaseModel):
    """Resolved entitlements plus the coarse action gates derived from them."""

    user_id: str
    max_post_length: int
    max_images: int
    max_videos: int
    allow_location_features: bool
    allow_analytics: bool
    max_video_size_bytes: int
    actions: dict[str, bool]


class PostLimitsRequest(BaseModel):
    text_length: int = Field(..., ge=0)
    images: int = Field(0, ge=0)
    videos: int = Field(0, ge=0)
    video_sizes: list[int] = Field(default_factory=list)


class PostLimitsResponse(BaseModel):
    allowed: bool
    violations: list[dict[str, Any]]


class RateLimitCheckRequest(BaseModel):
    """Check-and-increment request.

    Omit ``limit`` and ``window_seconds`` to use the preset for ``action``.
    """

    user_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, max_length=64)
    limit: Optional[int] = Field(None, ge=0)
    window_seconds: Optional[int] = Field(None, gt=0)


class RateLimitCheckResponse(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    window_seconds: int
    reset_at: datetime


class SubscriptionRecordResponse(BaseModel):
    user_id: str
    created: bool


# ============================================================================
# Admin
# ============================================================================


class DeadLetterItem(BaseModel):
    external_event_id: str
    provider_type: Optional[str] = None
    canonical_type: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    attempts: int
    last_error: Optional[str] = None
    raw_payload_digest: str


class DeadLetterList(BaseModel):
    items: list[DeadLetterItem]
    count: int


class ReplayResponse(BaseModel):
    event_id: str
    status: str
    outcome: Optional[str] = None
