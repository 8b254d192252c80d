"""Inbound processor event envelope.

Only the envelope is validated here; ``data.object`` stays a dict and is
interpreted by the classifier.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ent_api.billing.errors import MalformedPayload
from ent_api.utils.timeutil import from_unix


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class ProviderEvent(BaseModel):
    """``{id, type, created, data: {object: {...}}}``."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    data: EventData

    @field_validator("created")
    @classmethod
    def _created_is_representable(cls, value: int) -> int:
        try:
            from_unix(value)
        except (OverflowError, OSError, ValueError):
            raise ValueError("created is not a representable unix timestamp")
        return value

    @property
    def timestamp(self) -> datetime:
        return from_unix(self.created)

    @property
    def obj(self) -> dict[str, Any]:
        return self.data.object


def parse_event_body(raw_body: bytes) -> tuple[dict, ProviderEvent]:
    """Parse raw bytes into (json dict, validated envelope).

    Raises:
        MalformedPayload: Invalid JSON or missing / mistyped envelope fields
    """
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedPayload("Request body is not valid JSON")

    if not isinstance(body, dict):
        raise MalformedPayload("Event body must be a JSON object")

    try:
        return body, ProviderEvent.model_validate(body)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MalformedPayload(f"Invalid event envelope: {', '.join(fields)}", body=body)
