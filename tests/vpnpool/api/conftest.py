import pytest
from fastapi.testclient import TestClient

from vpnpool.api.app import app
from vpnpool.common.db.connection import get_session
from vpnpool.common.orchestrator import get_orchestrator


@pytest.fixture
def api_key(make_owner):
    _, api_key = make_owner("alice")
    return api_key


@pytest.fixture
def headers(api_key):
    return {"X-API-Key": api_key}


@pytest.fixture
def client(session_factory, orchestrator):
    """Test client wired to the SQLite test database and fake provisioner."""

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
