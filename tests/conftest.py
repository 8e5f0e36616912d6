import os
import subprocess
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from vpnpool.common import settings
from vpnpool.common.db.models import LEDGER_ID, Base, CapacityLedger, Owner
from vpnpool.common.orchestrator import SessionOrchestrator
from vpnpool.common.providers.publisher import ConfigPublisher
from vpnpool.common.retry import RetryPolicy
from tests.providers.compute_provider import FakeComputeProvisioner

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"


class FakeClock:
    """Settable clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def get_test_db_name() -> str:
    return f"test_vpnpool_{uuid.uuid4().hex[:8]}"


def create_test_database(test_db_name: str) -> str:
    """Create an empty PostgreSQL database next to `settings.DB_URL` and return its URL."""
    admin_engine = create_engine(settings.DB_URL)

    with admin_engine.connect() as conn:
        conn.execute(text("COMMIT"))  # Close any open transaction
        conn.execute(text(f"DROP DATABASE IF EXISTS {test_db_name}"))
        conn.execute(text(f"CREATE DATABASE {test_db_name}"))

    admin_engine.dispose()
    return settings.make_db_url(db=test_db_name)


def drop_test_database(test_db_name: str) -> None:
    """Drop the test database after terminating all active connections."""
    admin_engine = create_engine(settings.DB_URL)

    with admin_engine.connect() as conn:
        conn.execute(text("COMMIT"))  # Close any open transaction
        conn.execute(
            text(
                f"""
                SELECT pg_terminate_backend(pg_stat_activity.pid)
                FROM pg_stat_activity
                WHERE pg_stat_activity.datname = '{test_db_name}'
                AND pid <> pg_backend_pid()
                """
            )
        )
        conn.execute(text(f"DROP DATABASE IF EXISTS {test_db_name}"))

    admin_engine.dispose()


def run_alembic_migrations(db_name: str) -> None:
    """Run all Alembic migrations on the test database."""
    project_root = Path(__file__).parent.parent
    alembic_ini = project_root / "db" / "migrations" / "alembic.ini"

    subprocess.run(
        ["alembic", "-c", str(alembic_ini), "upgrade", "head"],
        env={**os.environ, "DATABASE_URL": settings.make_db_url(db=db_name)},
        check=True,
        capture_output=True,
    )


@pytest.fixture
def pg_test_db():
    """
    Create a migrated PostgreSQL database for the test and drop it afterwards.

    Skips the test when no PostgreSQL server is reachable at `settings.DB_URL`.
    """
    test_db_name = get_test_db_name()

    try:
        test_db_url = create_test_database(test_db_name)
    except OperationalError as e:
        pytest.skip(f"Failed to create test database: {e}")

    try:
        run_alembic_migrations(test_db_name)
        with patch.object(settings, "DB_URL", test_db_url):
            yield test_db_url
    finally:
        drop_test_database(test_db_name)


@pytest.fixture
def pg_engine(pg_test_db):
    engine = create_engine(pg_test_db, pool_size=10)
    yield engine
    engine.dispose()


@pytest.fixture
def db_engine(tmp_path: Path):
    """
    Create a SQLAlchemy engine backed by a throwaway SQLite file.

    A file rather than an in-memory database, so that the orchestrator's
    worker threads all see the same data.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'vpnpool.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """
    Create a new database session for a test.

    Returns:
        SQLAlchemy session
    """
    session = session_factory()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def mock_file_storage(tmp_path: Path):
    client_config_dir = tmp_path / "client-configs"
    client_config_dir.mkdir(parents=True, exist_ok=True)
    with (
        patch.object(settings, "FILE_STORAGE_DIR", tmp_path),
        patch.object(settings, "CLIENT_CONFIG_DIR", client_config_dir),
    ):
        yield


@pytest.fixture(autouse=True)
def mock_encryption_key():
    with patch.object(settings, "SECRETS_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY):
        yield


@pytest.fixture
def ledger_row(db_session):
    ledger = CapacityLedger(id=LEDGER_ID)
    db_session.add(ledger)
    db_session.commit()
    return ledger


@pytest.fixture
def make_owner(db_session):
    """Create owners, returning (owner, api_key) pairs."""

    def make(name: str = "alice", **kwargs) -> tuple[Owner, str]:
        owner, api_key = Owner.create_with_api_key(
            name=name, email=f"{name}@example.com", **kwargs
        )
        db_session.add(owner)
        db_session.commit()
        return owner, api_key

    return make


@pytest.fixture
def owner(make_owner):
    owner, _ = make_owner("alice")
    return owner


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provisioner():
    return FakeComputeProvisioner()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(session_factory, ledger_row, provisioner, clock, sleeps, tmp_path):
    orchestrator = SessionOrchestrator(
        provisioner,
        session_factory=session_factory,
        publisher=ConfigPublisher(
            storage_dir=tmp_path / "client-configs",
            server_url="https://vpn.example.com",
        ),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=False),
        sleep=sleeps.append,
        clock=clock,
        deprovision_timeout=0.5,
        status_timeout=0.5,
        max_sessions=3,
        max_compute_units=3,
    )
    yield orchestrator
    provisioner.release_stops()
    orchestrator.executor.shutdown(wait=True)
