"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip the MongoDB connection in the app lifespan when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parents[1]
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def letter_storage(tmp_path, monkeypatch):
    """Point on-disk letter artefacts (bulk ZIPs) at a per-test directory."""
    monkeypatch.setenv("LETTER_STORAGE_PATH", str(tmp_path))
    return tmp_path
