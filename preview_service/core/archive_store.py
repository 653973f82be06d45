"""
Archive store: where uploaded project ZIPs live before a build.

Two backends:
- LocalArchiveStore: <archive_dir>/<key>
- HttpArchiveStore: GET <base_url>/<key> (httpx)
"""
import logging
import re
from pathlib import Path
from typing import Optional

import httpx

from preview_service.core.config import config
from preview_service.core.errors import ArchiveError

logger = logging.getLogger(__name__)

# Keys are opaque but must not escape the store
KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-/]{0,255}$")

DOWNLOAD_TIMEOUT = 60
MAX_ARCHIVE_BYTES = 50 * 1024 * 1024  # 50MB


def validate_archive_key(key: Optional[str]) -> str:
    """Reject empty keys and keys that could traverse out of the store."""
    if not key:
        raise ArchiveError("Project has no archive")
    if not KEY_PATTERN.match(key) or ".." in key.split("/"):
        raise ArchiveError(f"Invalid archive key: {key}")
    return key


class ArchiveStore:
    """Interface for fetching archive bytes by key."""

    async def get_bytes(self, key: str) -> bytes:
        raise NotImplementedError


class LocalArchiveStore(ArchiveStore):
    """Archives stored as files under a directory."""

    def __init__(self, base_dir: Optional[Path] = None):
        self._base_dir = Path(base_dir) if base_dir else config.archive_dir

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def get_bytes(self, key: str) -> bytes:
        key = validate_archive_key(key)
        path = self._base_dir / key
        if not path.is_file():
            raise ArchiveError(f"Archive not found: {key}")

        size = path.stat().st_size
        if size > MAX_ARCHIVE_BYTES:
            raise ArchiveError(f"Archive exceeds limit: {size} > {MAX_ARCHIVE_BYTES} bytes")

        logger.debug(f"archive_read key={key} size={size}")
        return path.read_bytes()


class HttpArchiveStore(ArchiveStore):
    """Archives fetched from an HTTP object store."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DOWNLOAD_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def get_bytes(self, key: str) -> bytes:
        key = validate_archive_key(key)
        url = f"{self._base_url}/{key}"

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            raise ArchiveError("Archive download timed out")
        except httpx.RequestError as e:
            raise ArchiveError(f"Archive download failed: {type(e).__name__}")

        if response.status_code == 404:
            raise ArchiveError(f"Archive not found: {key}")
        if response.status_code != 200:
            raise ArchiveError(f"Failed to download archive: HTTP {response.status_code}")

        content = response.content
        if len(content) > MAX_ARCHIVE_BYTES:
            raise ArchiveError(f"Archive exceeds limit: {len(content)} > {MAX_ARCHIVE_BYTES} bytes")

        logger.info(f"archive_downloaded key={key} size={len(content)}")
        return content


def get_archive_store() -> ArchiveStore:
    """Archive store selected by configuration."""
    if config.archive_base_url:
        return HttpArchiveStore(config.archive_base_url)
    return LocalArchiveStore()
