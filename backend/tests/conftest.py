from __future__ import annotations

import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from memory import MemoryService, SQLiteMemoryDB  # noqa: E402


@pytest.fixture
def memory_service(tmp_path) -> MemoryService:
    return MemoryService(SQLiteMemoryDB(str(tmp_path / "jeevan-test.sqlite")))


@pytest.fixture
def store(memory_service):
    return memory_service.store


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "jeevan-api.sqlite"
    monkeypatch.setenv("JEEVAN_DB_PATH", str(db_path))
    # Keep CI deterministic; tests that need a model inject a fake provider.
    monkeypatch.setenv("OPENAI_API_KEY", "")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client
