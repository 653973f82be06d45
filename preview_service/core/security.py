"""
API key and caller identity middleware.

Authentication proper lives in the request layer in front of this service;
here we only check a shared API key (when PREVIEW_API_KEY is set) and read
the caller's user id from the X-User-Id header.

PUBLIC ROUTES (no identity required):
- /health, /docs, /redoc, /openapi.json, /metrics

PROTECTED ROUTES (API key when configured, X-User-Id required):
- /builds/*, /queue/*, /notifications/*
"""
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from preview_service.core.config import config
from preview_service.core.request_context import set_current_user_id

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset([
    "/",
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
])


def is_public_path(path: str) -> bool:
    """Check if a path is public (no identity required)."""
    return path in PUBLIC_PATHS


def _parse_user_id(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        user_id = int(raw.strip())
    except ValueError:
        return None
    return user_id if user_id > 0 else None


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Enforce the shared API key and attach the caller's user id to request.state.

    API key can be provided via:
    - X-API-Key header
    - Authorization: Bearer <token> header
    """

    def __init__(self, app, api_key: Optional[str] = None):
        super().__init__(app)
        self._api_key = api_key if api_key is not None else config.api_key

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if is_public_path(path):
            return await call_next(request)

        if self._api_key:
            api_key = request.headers.get("X-API-Key")
            if not api_key:
                auth_header = request.headers.get("Authorization", "")
                if auth_header.startswith("Bearer "):
                    api_key = auth_header[7:]
            if not api_key or not hmac.compare_digest(api_key, self._api_key):
                logger.warning(f"auth_failed path={path}")
                return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        user_id = _parse_user_id(request.headers.get("X-User-Id"))
        if user_id is None:
            return JSONResponse(status_code=401, content={"detail": "Missing or invalid X-User-Id"})

        request.state.user_id = user_id
        set_current_user_id(user_id)
        return await call_next(request)


def get_user_id(request: Request) -> int:
    """Get the caller's user id. Call after middleware has run."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return user_id
