"""
Request context management for log and error correlation.

Uses contextvars for async-safe propagation of the request id and the
processor event currently being handled.
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_event_id",
    "get_event_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_event_id: ContextVar[Optional[str]] = ContextVar("event_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_event_id(event_id: str) -> None:
    """Set the processor event id being handled in the current context."""
    _event_id.set(event_id)


def get_event_id() -> Optional[str]:
    return _event_id.get()


def clear_context() -> None:
    """Called at end of request to prevent context leaking."""
    _request_id.set(None)
    _event_id.set(None)


def get_context_dict() -> dict:
    """All context variables as a dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "event_id": get_event_id(),
    }
