from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Must be set before any module builds Settings or the SQLAlchemy engine.
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="peerlink-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{(_RUNTIME_DIR / 'peerlink_test.db').as_posix()}")
os.environ.setdefault("DATA_DIR", str(_RUNTIME_DIR))
os.environ.setdefault("AUTO_CREATE_DB_SCHEMA", "true")
os.environ.setdefault("CAPTURE_BACKEND", "synthetic")
os.environ.setdefault("ICE_SERVERS", "[]")


@pytest.fixture(scope="session")
def app():
    import importlib

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def network():
    from fakes import FakeNetwork

    return FakeNetwork()


@pytest.fixture()
def holder(network):
    from api.dependencies import SessionHolder
    from fakes import make_session

    return SessionHolder(factory=lambda: make_session(network))


@pytest.fixture()
def client(app, holder):
    # Swap in fake peer connections so tests never touch real network stacks.
    import api.dependencies as deps

    app.dependency_overrides[deps.get_session_holder] = lambda: holder

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
