"""RFC 9457 Problem Details responses."""

import uuid
from typing import Any, Optional

from fastapi.responses import JSONResponse

from ent_api.context import request_id_var
from ent_api.schemas import ProblemDetail, ViolatedPolicy

PROBLEM_BASE_URI = "urn:ent:problem"


def trace_instance() -> str:
    """Opaque instance identifier derived from the request id."""
    request_id = request_id_var.get()
    return f"urn:ent:trace:{request_id}" if request_id else f"urn:ent:trace:{uuid.uuid4()}"


def create_problem_details_response(
    *,
    type_uri: str,
    title: str,
    status: int,
    detail: str | dict[str, Any],
    violated_policies: Optional[list[ViolatedPolicy]] = None,
    headers: Optional[dict[str, str]] = None,
    extensions: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    """Create an application/problem+json response.

    Args:
        type_uri: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation
        violated_policies: Violated limits (serialized as ``violated-policies``)
        headers: Optional additional headers
        extensions: Additional top-level members
    """
    problem = ProblemDetail(
        type=type_uri,
        title=title,
        status=status,
        detail=detail,
        instance=trace_instance(),
    )
    content = problem.model_dump(exclude_none=True)
    if violated_policies:
        content["violated-policies"] = [p.model_dump(exclude_none=True) for p in violated_policies]
    if extensions:
        content.update(extensions)

    response_headers = {"Content-Type": "application/problem+json"}
    if headers:
        response_headers.update(headers)

    return JSONResponse(status_code=status, content=content, headers=response_headers)
