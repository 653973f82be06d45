"""
Request context for tracking request_id and caller identity across async calls.
"""
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[Optional[int]] = ContextVar("user_id", default=None)


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID (generates new one if not provided)."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def get_current_user_id() -> Optional[int]:
    """User id resolved by the security middleware for this request."""
    return user_id_var.get()


def set_current_user_id(user_id: Optional[int]) -> None:
    user_id_var.set(user_id)
