"""
Per-job build workspaces and archive extraction.

Security:
- Path traversal prevention (no absolute paths, no "..")
- File count and size limits enforced
- Workspace removed on failure and on retention expiry
"""
import io
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Iterable, Optional

from preview_service.core.config import config
from preview_service.core.errors import ArchiveError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_FILES = 20_000
MAX_EXTRACTED_SIZE = 200 * 1024 * 1024  # 200MB extracted

# Depth of the structure summary stored on the project record
STRUCTURE_MAX_DEPTH = 2
STRUCTURE_MAX_ENTRIES = 200


@dataclass
class ExtractionResult:
    """Outcome of extracting a project archive."""
    root: Path
    file_count: int
    total_size: int
    files: list[str] = field(default_factory=list)


def _is_safe_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    if path.startswith("/") or path.startswith("\\"):
        return False
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized):
        return False
    if ".." in normalized.split(os.sep):
        return False
    return True


def _single_root_dir(names: list[str]) -> Optional[str]:
    """Name of the only top-level entry if it is a directory holding everything."""
    tops = {name.split("/", 1)[0] for name in names if name}
    if len(tops) != 1:
        return None
    top = tops.pop()
    if all(name.startswith(f"{top}/") for name in names):
        return top
    return None


def extract_archive(content: bytes, workspace: Path) -> ExtractionResult:
    """
    Extract a ZIP archive into the workspace.

    Relative paths are preserved and intermediate directories created. When
    the archive holds a single top-level directory and nothing else, that
    directory becomes the project root.

    Raises:
        ArchiveError: invalid archive, unsafe path, or limits exceeded
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(content), "r")
    except zipfile.BadZipFile:
        raise ArchiveError("Invalid ZIP archive")

    with zf:
        infos = zf.infolist()
        file_infos = [info for info in infos if not info.is_dir()]
        if len(file_infos) > MAX_FILES:
            raise ArchiveError(f"Too many files: {len(file_infos)} > {MAX_FILES}")

        for info in infos:
            if not _is_safe_path(info.filename):
                raise ArchiveError(f"Unsafe path in archive: {info.filename}")

        files: list[str] = []
        total_size = 0
        for info in file_infos:
            total_size += info.file_size
            if total_size > MAX_EXTRACTED_SIZE:
                raise ArchiveError(f"Extracted size exceeds limit: {total_size} > {MAX_EXTRACTED_SIZE}")

            dest_path = workspace / info.filename
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(zf.read(info))
            files.append(info.filename)

        for info in infos:
            if info.is_dir():
                (workspace / info.filename).mkdir(parents=True, exist_ok=True)

    root = workspace
    top = _single_root_dir([info.filename for info in infos])
    if top and (workspace / top).is_dir():
        root = workspace / top
        files = [name[len(top) + 1:] for name in files]

    logger.info(f"archive_extracted files={len(files)} size={total_size}")
    return ExtractionResult(root=root, file_count=len(files), total_size=total_size, files=files)


def summarize_structure(files: Iterable[str]) -> dict:
    """Nested dict of directories (to a fixed depth) with file counts per level."""
    tree: dict = {"files": 0, "dirs": {}}
    entries = 0
    for name in files:
        parts = name.split("/")
        node = tree
        for part in parts[:-1][:STRUCTURE_MAX_DEPTH]:
            if part not in node["dirs"]:
                if entries >= STRUCTURE_MAX_ENTRIES:
                    break
                node["dirs"][part] = {"files": 0, "dirs": {}}
                entries += 1
            node = node["dirs"][part]
        node["files"] += 1
    return tree


# =============================================================================
# Workspace Management
# =============================================================================

class WorkspaceManager:
    """Manages isolated workspaces for build jobs."""

    def __init__(self, base_dir: Optional[Path] = None, retention_hours: Optional[int] = None):
        self._base_dir = Path(base_dir) if base_dir else config.build_dir
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._retention_hours = (
            retention_hours if retention_hours is not None else config.workspace_retention_hours
        )

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def create_workspace(self, job_id: str) -> Path:
        """Create an empty workspace directory for a job, replacing leftovers."""
        workspace = self._base_dir / job_id
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
        workspace.mkdir(parents=True, exist_ok=True)
        logger.info(f"workspace_created job_id={job_id}")
        return workspace

    def get_workspace(self, job_id: str) -> Optional[Path]:
        """Get workspace path if it exists."""
        workspace = self._base_dir / job_id
        if workspace.exists():
            return workspace
        return None

    def cleanup_workspace(self, job_id: str) -> bool:
        """Remove workspace for a job."""
        workspace = self._base_dir / job_id
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"workspace_cleaned job_id={job_id}")
            return True
        return False

    def cleanup_old_workspaces(self, exclude: Iterable[str] = ()) -> int:
        """Remove workspaces older than the retention period, skipping excluded job ids."""
        excluded = set(exclude)
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=self._retention_hours)
            deleted = 0

            for item in self._base_dir.iterdir():
                if not item.is_dir() or item.name in excluded:
                    continue
                mtime = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff:
                    shutil.rmtree(item, ignore_errors=True)
                    deleted += 1

            if deleted > 0:
                logger.info(f"cleanup_workspaces deleted={deleted}")
            return deleted
        except OSError as e:
            logger.warning(f"cleanup_workspaces_failed error={type(e).__name__}")
            return 0


# Global workspace manager
workspace_manager = WorkspaceManager()
