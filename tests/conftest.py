"""
Pytest configuration and fixtures.
"""
import io
import os
import socket
import sys
import tempfile
import zipfile
from pathlib import Path

# Set test environment before importing app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="preview-service-tests-")
os.environ["PREVIEW_DATABASE_URL"] = f"sqlite:///{_TEST_DATA_DIR}/preview.db"
os.environ["PREVIEW_BUILD_DIR"] = f"{_TEST_DATA_DIR}/builds"
os.environ["PREVIEW_ARCHIVE_DIR"] = f"{_TEST_DATA_DIR}/archives"
os.environ["PREVIEW_PROCESSOR_ENABLED"] = "false"
os.environ["PREVIEW_API_KEY"] = "test-api-key"
os.environ["PREVIEW_READINESS_INTERVAL"] = "0.2"
os.environ["PREVIEW_STOP_GRACE_SECONDS"] = "2"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from preview_service.db.database import make_session_factory


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Return valid headers for user 1."""
    return {"X-API-Key": "test-api-key", "X-User-Id": "1"}


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    return make_session_factory(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def temp_workspace():
    """Create a temporary workspace directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_zip(files: dict[str, str]) -> bytes:
    """Build a ZIP archive in memory from {path: content}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def free_port() -> int:
    """A port nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
