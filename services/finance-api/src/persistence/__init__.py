"""Persistence primitives for the finance API."""

from persistence.database import (
    DB_URL_ENV_VAR,
    DEFAULT_DB_FILENAME,
    DEFAULT_DB_PATH,
    SessionLocal,
    get_database_url,
    get_engine,
    get_session,
    init_db,
    reset_engine,
)
from persistence.models import Base, Budget, BudgetAuditEvent, Transaction

__all__ = [
    "Base",
    "Budget",
    "BudgetAuditEvent",
    "DB_URL_ENV_VAR",
    "DEFAULT_DB_FILENAME",
    "DEFAULT_DB_PATH",
    "SessionLocal",
    "Transaction",
    "get_database_url",
    "get_engine",
    "get_session",
    "init_db",
    "reset_engine",
]
