"""
SQLAlchemy models for build jobs, notifications and project records.
Timestamps are ISO-8601 UTC strings.
"""
from sqlalchemy import Boolean, Column, Text, Integer, Index, ForeignKey
from sqlalchemy.orm import relationship

from preview_service.db.database import Base


class Project(Base):
    """Target resource of a build: an uploaded project and its preview state."""
    __tablename__ = "projects"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=False)
    owner_id = Column(Integer, nullable=False, index=True)
    archive_key = Column(Text, nullable=True)  # Key in the archive store
    type = Column(Text, nullable=False, default="static")
    build_status = Column(Text, nullable=False, default="pending")
    preview_url = Column(Text, nullable=True)
    port_number = Column(Integer, nullable=True)
    file_count = Column(Integer, nullable=False, default=0)
    total_file_size = Column(Integer, nullable=False, default=0)
    structure = Column(Text, nullable=True)  # JSON string
    build_output = Column(Text, nullable=True)  # JSON string
    last_build_at = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    jobs = relationship("BuildJob", back_populates="project", cascade="all, delete-orphan")


class BuildJob(Base):
    """One request to build and preview a project."""
    __tablename__ = "build_jobs"

    id = Column(Text, primary_key=True, index=True)
    project_id = Column(Text, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(Text, nullable=False, default="pending", index=True)
    priority = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(Text, nullable=True)
    logs = Column(Text, nullable=True)  # JSON string
    error = Column(Text, nullable=True)
    allocated_port = Column(Integer, nullable=True)
    preview_url = Column(Text, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(Text, nullable=False, index=True)
    started_at = Column(Text, nullable=True)
    completed_at = Column(Text, nullable=True)

    project = relationship("Project", back_populates="jobs")
    notifications = relationship("Notification", back_populates="job", cascade="all, delete-orphan")

    # Dequeue order: pending jobs by priority desc, created_at asc
    __table_args__ = (
        Index("ix_build_jobs_status_priority_created", "status", "priority", "created_at"),
        Index("ix_build_jobs_user_created", "user_id", "created_at"),
    )


class Notification(Base):
    """Persisted user notification about a build job."""
    __tablename__ = "notifications"

    id = Column(Text, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    job_id = Column(Text, ForeignKey("build_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(Text, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Text, nullable=False, index=True)

    job = relationship("BuildJob", back_populates="notifications")

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
    )
