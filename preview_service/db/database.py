"""
Database engine and session management.
Default database: data/preview.db (SQLite), override with PREVIEW_DATABASE_URL.
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from preview_service.core.config import config

# Base class for models
Base = declarative_base()


def make_engine(database_url: str):
    """Create an engine; SQLite connections are shared across worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if database_url.startswith("sqlite:///"):
            Path(database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,  # No SQL logging
    )


def make_session_factory(database_url: str) -> sessionmaker:
    """Create a session factory bound to a fresh engine with all tables created."""
    engine = make_engine(database_url)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = make_engine(config.database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize database tables."""
    from preview_service.db.models import BuildJob, Notification, Project  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
