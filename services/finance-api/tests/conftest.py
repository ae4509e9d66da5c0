"""Pytest configuration for finance-api tests.

Puts the service's src directory and the shared services root on sys.path,
and provides an in-memory database plus a fault-injectable budget service.
"""

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

SERVICE_SRC = Path(__file__).resolve().parents[1] / "src"
SERVICES_ROOT = Path(__file__).resolve().parents[2]
for path in (SERVICES_ROOT, SERVICE_SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

# Keep imports of `main` away from on-disk databases and remote services.
os.environ.setdefault("FINANCE_DB_URL", "sqlite://")
os.environ.setdefault("BUDGET_SERVICE_PROVIDER", "memory")

from fakes import RecordingBudgetService  # noqa: E402
from persistence.models import Base  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False, future=True)
    session = factory()
    yield session
    session.close()


@pytest.fixture
def budget_service() -> RecordingBudgetService:
    return RecordingBudgetService()
