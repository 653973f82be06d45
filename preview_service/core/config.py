"""
Preview service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent
DATA_DIR = PROJECT_ROOT / "data"


@dataclass(frozen=True)
class PreviewConfig:
    """Preview service configuration (immutable)."""
    database_url: str = f"sqlite:///{DATA_DIR / 'preview.db'}"
    build_dir: Path = DATA_DIR / "builds"
    archive_dir: Path = DATA_DIR / "archives"
    archive_base_url: Optional[str] = None  # Use HTTP archive store when set

    # Port allocation
    port_base: int = 4000
    port_max_attempts: int = 100
    bind_host: str = "0.0.0.0"
    probe_host: str = "127.0.0.1"
    public_host: str = "localhost"

    # Queue processor
    processor_enabled: bool = True
    poll_interval: float = 5.0
    maintenance_interval: float = 24 * 60 * 60

    # Readiness / process control
    readiness_attempts: int = 30
    readiness_interval: float = 1.0
    connect_timeout: float = 2.0
    smoke_timeout: float = 5.0
    command_timeout: int = 600
    stop_grace_seconds: float = 5.0
    max_log_lines: int = 2000

    # Push channel
    heartbeat_interval: float = 30.0
    stale_connection_seconds: float = 5 * 60

    # Retention
    notification_retention_days: int = 30
    workspace_retention_hours: int = 24

    api_key: Optional[str] = None  # Never logged
    log_level: str = "INFO"

    def preview_url(self, port: int) -> str:
        """Public URL for a preview server on the given port."""
        return f"http://{self.public_host}:{port}"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_config() -> PreviewConfig:
    """Load preview service configuration from environment."""
    defaults = PreviewConfig()
    return PreviewConfig(
        database_url=os.getenv("PREVIEW_DATABASE_URL", defaults.database_url),
        build_dir=Path(os.getenv("PREVIEW_BUILD_DIR", str(defaults.build_dir))),
        archive_dir=Path(os.getenv("PREVIEW_ARCHIVE_DIR", str(defaults.archive_dir))),
        archive_base_url=os.getenv("PREVIEW_ARCHIVE_BASE_URL") or None,
        port_base=int(os.getenv("PREVIEW_PORT_BASE", str(defaults.port_base))),
        port_max_attempts=int(os.getenv("PREVIEW_PORT_MAX_ATTEMPTS", str(defaults.port_max_attempts))),
        bind_host=os.getenv("PREVIEW_BIND_HOST", defaults.bind_host),
        probe_host=os.getenv("PREVIEW_PROBE_HOST", defaults.probe_host),
        public_host=os.getenv("PREVIEW_PUBLIC_HOST", defaults.public_host),
        processor_enabled=_env_bool("PREVIEW_PROCESSOR_ENABLED", defaults.processor_enabled),
        poll_interval=float(os.getenv("PREVIEW_POLL_INTERVAL", str(defaults.poll_interval))),
        maintenance_interval=float(
            os.getenv("PREVIEW_MAINTENANCE_INTERVAL", str(defaults.maintenance_interval))
        ),
        readiness_attempts=int(os.getenv("PREVIEW_READINESS_ATTEMPTS", str(defaults.readiness_attempts))),
        readiness_interval=float(os.getenv("PREVIEW_READINESS_INTERVAL", str(defaults.readiness_interval))),
        connect_timeout=float(os.getenv("PREVIEW_CONNECT_TIMEOUT", str(defaults.connect_timeout))),
        smoke_timeout=float(os.getenv("PREVIEW_SMOKE_TIMEOUT", str(defaults.smoke_timeout))),
        command_timeout=int(os.getenv("PREVIEW_COMMAND_TIMEOUT", str(defaults.command_timeout))),
        stop_grace_seconds=float(os.getenv("PREVIEW_STOP_GRACE_SECONDS", str(defaults.stop_grace_seconds))),
        max_log_lines=int(os.getenv("PREVIEW_MAX_LOG_LINES", str(defaults.max_log_lines))),
        heartbeat_interval=float(os.getenv("PREVIEW_HEARTBEAT_INTERVAL", str(defaults.heartbeat_interval))),
        stale_connection_seconds=float(
            os.getenv("PREVIEW_STALE_CONNECTION_SECONDS", str(defaults.stale_connection_seconds))
        ),
        notification_retention_days=int(
            os.getenv("PREVIEW_NOTIFICATION_RETENTION_DAYS", str(defaults.notification_retention_days))
        ),
        workspace_retention_hours=int(
            os.getenv("PREVIEW_WORKSPACE_RETENTION_HOURS", str(defaults.workspace_retention_hours))
        ),
        api_key=os.getenv("PREVIEW_API_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
    )


# Loaded once at import; tests set environment before importing the app
config = get_config()
