"""
Project records: the target resource a build job previews.

The build worker reads the archive key from here and writes back analysis
results (type, file counts, structure) and the live preview state.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from preview_service.core.errors import ProjectNotFoundError
from preview_service.db.database import SessionLocal
from preview_service.db.models import Project as ProjectModel
from preview_service.schemas.builds import ProjectBuildStatus

logger = logging.getLogger(__name__)


@dataclass
class Project:
    """Represents a project record (in-memory representation)."""
    id: str
    name: str
    owner_id: int
    archive_key: Optional[str] = None
    type: str = "static"
    build_status: ProjectBuildStatus = ProjectBuildStatus.PENDING
    preview_url: Optional[str] = None
    port_number: Optional[int] = None
    file_count: int = 0
    total_file_size: int = 0
    structure: Optional[dict[str, Any]] = None
    build_output: Optional[dict[str, Any]] = None
    last_build_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _model_to_project(model: ProjectModel) -> Project:
    """Convert SQLAlchemy model to Project dataclass."""
    return Project(
        id=model.id,
        name=model.name,
        owner_id=model.owner_id,
        archive_key=model.archive_key,
        type=model.type,
        build_status=ProjectBuildStatus(model.build_status),
        preview_url=model.preview_url,
        port_number=model.port_number,
        file_count=model.file_count or 0,
        total_file_size=model.total_file_size or 0,
        structure=json.loads(model.structure) if model.structure else None,
        build_output=json.loads(model.build_output) if model.build_output else None,
        last_build_at=datetime.fromisoformat(model.last_build_at) if model.last_build_at else None,
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


class ProjectStore:
    """SQLite-backed project records."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def create(self, name: str, owner_id: int, archive_key: Optional[str] = None) -> Project:
        """Create a project record."""
        now = _now()
        project_id = str(uuid.uuid4())
        db = self._session_factory()
        try:
            model = ProjectModel(
                id=project_id,
                name=name,
                owner_id=owner_id,
                archive_key=archive_key,
                type="static",
                build_status=ProjectBuildStatus.PENDING.value,
                file_count=0,
                total_file_size=0,
                created_at=now,
                updated_at=now,
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(f"project_created project_id={project_id}")
            return _model_to_project(model)
        finally:
            db.close()

    def get(self, project_id: str) -> Optional[Project]:
        """Get a project by ID."""
        db = self._session_factory()
        try:
            model = db.query(ProjectModel).filter(ProjectModel.id == project_id).first()
            if not model:
                return None
            return _model_to_project(model)
        finally:
            db.close()

    def _update(self, project_id: str, values: dict) -> Project:
        db = self._session_factory()
        try:
            model = db.query(ProjectModel).filter(ProjectModel.id == project_id).first()
            if not model:
                raise ProjectNotFoundError(f"Project not found: {project_id}")
            for key, value in values.items():
                setattr(model, key, value)
            model.updated_at = _now()
            db.commit()
            db.refresh(model)
            return _model_to_project(model)
        finally:
            db.close()

    def update_analysis(
        self,
        project_id: str,
        project_type: str,
        file_count: int,
        total_file_size: int,
        structure: Optional[dict[str, Any]] = None,
    ) -> Project:
        """Record what the worker learned about the extracted project."""
        project = self._update(project_id, {
            "type": project_type,
            "file_count": file_count,
            "total_file_size": total_file_size,
            "structure": json.dumps(structure) if structure is not None else None,
        })
        logger.info(f"project_analyzed project_id={project_id} type={project_type} files={file_count}")
        return project

    def update_build_status(
        self,
        project_id: str,
        status: ProjectBuildStatus,
        preview_url: Optional[str] = None,
        port: Optional[int] = None,
        build_output: Optional[dict[str, Any]] = None,
    ) -> Project:
        """
        Set the project's build status.

        running records the preview URL, port and last_build_at; stopped and
        failed clear the URL and port.
        """
        values: dict[str, Any] = {"build_status": status.value}
        if status == ProjectBuildStatus.RUNNING:
            values["preview_url"] = preview_url
            values["port_number"] = port
            values["last_build_at"] = _now()
        elif status in (ProjectBuildStatus.STOPPED, ProjectBuildStatus.FAILED):
            values["preview_url"] = None
            values["port_number"] = None
        if build_output is not None:
            values["build_output"] = json.dumps(build_output)

        project = self._update(project_id, values)
        logger.info(f"project_build_status project_id={project_id} status={status.value}")
        return project


# Global project store instance
project_store = ProjectStore()
