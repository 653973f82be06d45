"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "requests_2xx": "HTTP requests answered 2xx",
    "requests_4xx": "HTTP requests answered 4xx",
    "requests_5xx": "HTTP requests answered 5xx",
    "builds_enqueued_total": "Build jobs enqueued",
    "builds_dequeued_total": "Build jobs claimed by the queue processor",
    "builds_completed_total": "Build jobs completed with a running preview",
    "builds_failed_total": "Build jobs failed",
    "builds_cancelled_total": "Build jobs cancelled by their owner",
    "workers_stopped_total": "Preview servers stopped",
    "notifications_created_total": "Notifications persisted",
    "push_events_sent_total": "Server-sent events written to live connections",
    "push_connections_opened_total": "Push connections opened",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self, gauges: Dict[str, int] | None = None) -> str:
        """Export counters (and optional point-in-time gauges) in Prometheus text format."""
        lines = []
        counters = self.get_all()

        for name, help_text in COUNTERS.items():
            metric = f"preview_{name}"
            lines.append(f"# HELP {metric} {help_text}")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {counters.get(name, 0)}")

        for name, value in (gauges or {}).items():
            metric = f"preview_{name}"
            lines.append(f"# TYPE {metric} gauge")
            lines.append(f"{metric} {value}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
