"""
Engine and session wiring for the finance API.

`FINANCE_DB_URL` selects the database (a SQLite file under `data/` by default).
In-memory SQLite URLs are pinned to a single shared connection so the tables
created by `init_db` stay visible to every request session.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DB_FILENAME = "finance.db"
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "data" / DEFAULT_DB_FILENAME
DB_URL_ENV_VAR = "FINANCE_DB_URL"
DB_ECHO_ENV_VAR = "FINANCE_DB_ECHO"

_engine: Engine | None = None


def get_database_url() -> str:
    """Return the configured database URL (defaults to a SQLite file)."""
    env_url = (os.getenv(DB_URL_ENV_VAR) or "").strip()
    if env_url:
        return env_url
    return f"sqlite:///{DEFAULT_DB_PATH}"


def is_in_memory_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite") and url.database in (None, "", ":memory:")


def _prepare_sqlite_path(url: URL) -> None:
    db_path = Path(url.database)
    if not db_path.is_absolute():
        db_path = (Path.cwd() / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _engine_options(url: URL) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "future": True,
        "echo": os.getenv(DB_ECHO_ENV_VAR, "false").lower() in {"1", "true", "yes", "on"},
    }
    if not url.drivername.startswith("sqlite"):
        # Budgets are read before every external call; drop connections the server closed.
        options["pool_pre_ping"] = True
        return options

    options["connect_args"] = {"check_same_thread": False}
    if is_in_memory_sqlite(url):
        options["poolclass"] = StaticPool
    else:
        _prepare_sqlite_path(url)
    return options


def get_engine() -> Engine:
    """Create (or return) the process-wide SQLAlchemy engine."""
    global _engine
    if _engine is None:
        url = make_url(get_database_url())
        _engine = create_engine(url, **_engine_options(url))
    return _engine


def reset_engine() -> None:
    """Dispose the cached engine so the next `get_engine` re-reads the environment."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session; an unhandled error rolls back pending work."""
    session = SessionLocal(bind=get_engine())
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create tables if they are missing."""
    from . import models  # noqa: WPS433 (import inside function)

    models.Base.metadata.create_all(bind=get_engine())
