"""Request context management for observability.

Context variables for request tracking across async boundaries and the
ledger/engine call chain.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# User whose subscription record is being touched
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# External billing event currently being processed
event_id_var: ContextVar[str] = ContextVar("event_id", default="")
