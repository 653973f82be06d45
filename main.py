#!/usr/bin/env python3
"""
preview-service: FastAPI service that builds uploaded web projects and serves live previews.
Caller identity (X-User-Id) required for all endpoints except /health and /metrics.
"""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from preview_service import __version__
from preview_service.api.builds import router as builds_router
from preview_service.api.metrics import router as metrics_router
from preview_service.api.notifications import router as notifications_router
from preview_service.core.config import config
from preview_service.core.logging import setup_logging
from preview_service.core.queue_processor import queue_processor
from preview_service.core.realtime import push_registry
from preview_service.core.request_logging import RequestLoggingMiddleware
from preview_service.core.security import IdentityMiddleware
from preview_service.db.database import init_db

# Setup structured JSON logging
setup_logging(config.log_level)

# Initialize database on startup
init_db()

# =============================================================================
# Configuration from environment
# =============================================================================
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the queue processor for the lifetime of the app."""
    if config.processor_enabled:
        queue_processor.start()
    try:
        yield
    finally:
        if config.processor_enabled:
            await queue_processor.stop()
        push_registry.close_all()


# Create app
app = FastAPI(
    title="preview-service",
    description="Build queue and live preview servers for uploaded web projects",
    version=__version__,
    lifespan=lifespan,
)

# Add request logging middleware (added last so it wraps identity checks)
app.add_middleware(IdentityMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(builds_router)
app.include_router(notifications_router)
app.include_router(metrics_router)


@app.get("/")
def root():
    """Service index."""
    return {
        "service": "preview-service",
        "version": __version__,
        "docs_url": "/docs",
        "health_url": "/health",
    }


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
