"""
Metrics endpoint for Prometheus scraping.
Public; exposes counters and point-in-time queue gauges only.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from preview_service.core.build_queue import build_queue
from preview_service.core.metrics import metrics
from preview_service.core.realtime import push_registry
from preview_service.core.worker_registry import worker_registry

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics() -> str:
    """Export metrics in Prometheus text format."""
    stats = build_queue.get_queue_stats()
    gauges = {
        "jobs_pending": stats["pending"],
        "jobs_building": stats["queued"] + stats["building"],
        "active_workers": worker_registry.count(),
        "push_connections": push_registry.get_connection_count(),
    }
    return metrics.to_prometheus(gauges)
