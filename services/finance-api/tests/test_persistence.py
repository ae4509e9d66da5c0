from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from errors import DuplicateBudgetError, PersistenceError
from persistence.database import (
    DB_URL_ENV_VAR,
    DEFAULT_DB_PATH,
    get_database_url,
    get_session,
    init_db,
    reset_engine,
)
from persistence.models import Base, Budget, BudgetAuditEvent
from persistence.repository import BudgetAction, BudgetRepository, TransactionRepository, TransactionType
from fakes import add_transaction


def _budget(**overrides) -> Budget:
    values = {
        "user_id": "u1",
        "category": "Food",
        "amount": Decimal("500.00"),
        "currency": "USD",
        "month": date(2026, 3, 1),
        "external_resource_id": "user-u1-Food",
    }
    values.update(overrides)
    return Budget(**values)


def test_budget_survives_new_engine(tmp_path: Path) -> None:
    """Budgets persist even after a new engine/session is created."""
    url = f"sqlite:///{tmp_path / 'finance.db'}"

    engine_one = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    Base.metadata.create_all(bind=engine_one)
    SessionOne = sessionmaker(bind=engine_one, expire_on_commit=False, future=True)

    with SessionOne() as session:
        created = BudgetRepository(session).save(_budget(), action=BudgetAction.CREATE, source_ip="127.0.0.1")
    engine_one.dispose()

    engine_two = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    SessionTwo = sessionmaker(bind=engine_two, expire_on_commit=False, future=True)

    with SessionTwo() as session:
        restored = BudgetRepository(session).find_by_user_and_category("u1", "Food")

    assert restored is not None
    assert restored.id == created.id
    assert restored.amount == Decimal("500.00")
    assert restored.external_resource_id == "user-u1-Food"
    engine_two.dispose()


def test_unique_user_category_is_enforced(db_session) -> None:
    repository = BudgetRepository(db_session)
    repository.save(_budget())

    with pytest.raises(DuplicateBudgetError):
        repository.save(_budget(amount=Decimal("10.00")))

    assert len(repository.list_for_user("u1")) == 1
    repository.save(_budget(user_id="u2", external_resource_id="user-u2-Food"))
    assert len(repository.list_for_user("u2")) == 1


def test_audit_trail_outlives_deleted_budget(db_session) -> None:
    repository = BudgetRepository(db_session)
    budget = repository.save(_budget(), action=BudgetAction.CREATE, source_ip="127.0.0.1")
    repository.save(budget, action=BudgetAction.UPDATE, details={"amount": "450.00"})
    repository.delete(budget, source_ip="10.0.0.2", details={"external_deleted": True})

    assert repository.find_by_id(budget.id) is None
    events = repository.events_for(budget.id)
    assert [event.action for event in events] == ["create_budget", "update_budget", "delete_budget"]
    assert events[0].source_ip == "127.0.0.1"
    assert events[1].details == {"amount": "450.00"}
    assert events[2].details == {"external_deleted": True}


def test_failed_commit_rolls_back_budget_and_event(db_session, monkeypatch) -> None:
    repository = BudgetRepository(db_session)

    def failing_commit() -> None:
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(PersistenceError):
        repository.save(_budget(), action=BudgetAction.CREATE)
    monkeypatch.undo()

    assert repository.list_for_user("u1") == []
    assert db_session.query(BudgetAuditEvent).count() == 0


def test_list_for_user_filters_by_month_range(db_session) -> None:
    repository = BudgetRepository(db_session)
    repository.save(_budget(category="Food", month=date(2026, 2, 1)))
    repository.save(_budget(category="Rent", month=date(2026, 3, 1)))

    march = repository.list_for_user("u1", month_start=date(2026, 3, 1), month_end=date(2026, 4, 1))

    assert [budget.category for budget in march] == ["Rent"]
    assert [budget.category for budget in repository.list_for_user("u1")] == ["Rent", "Food"]


def test_expense_range_query_is_half_open(db_session) -> None:
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    end = datetime(2026, 4, 1, tzinfo=timezone.utc)
    add_transaction(db_session, user_id="u1", amount="10", when=start)
    add_transaction(db_session, user_id="u1", amount="20", when=end)
    add_transaction(db_session, user_id="u1", amount="40", type="income", when=start)

    found = TransactionRepository(db_session).find_by_user_category_and_date_range(
        "u1", "Food", TransactionType.EXPENSE, start, end
    )

    assert [transaction.amount for transaction in found] == [Decimal("10.00")]


def test_read_failures_are_translated(db_session, monkeypatch) -> None:
    def broken_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "scalars", broken_query)
    monkeypatch.setattr(db_session, "get", broken_query)

    with pytest.raises(PersistenceError):
        BudgetRepository(db_session).list_for_user("u1")
    with pytest.raises(PersistenceError):
        BudgetRepository(db_session).find_by_id("b1")
    with pytest.raises(PersistenceError):
        BudgetRepository(db_session).find_holder_of_external_resource("u1", "user-u1-Food")
    with pytest.raises(PersistenceError):
        TransactionRepository(db_session).find_by_user_category_and_date_range(
            "u1", "Food", TransactionType.EXPENSE, datetime(2026, 3, 1), datetime(2026, 4, 1)
        )


def test_find_holder_of_external_resource_excludes_given_budget(db_session) -> None:
    repository = BudgetRepository(db_session)
    renamed = repository.save(_budget(category="Groceries"))

    assert repository.find_holder_of_external_resource("u1", "user-u1-Food").id == renamed.id
    assert repository.find_holder_of_external_resource("u1", "user-u1-Food", exclude_id=renamed.id) is None
    assert repository.find_holder_of_external_resource("u2", "user-u1-Food") is None


@pytest.fixture
def in_memory_database(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv(DB_URL_ENV_VAR, "sqlite://")
    reset_engine()
    init_db()
    yield
    reset_engine()


def test_in_memory_database_is_shared_between_sessions(in_memory_database) -> None:
    writer = get_session()
    BudgetRepository(next(writer)).save(_budget())
    writer.close()

    reader = get_session()
    assert BudgetRepository(next(reader)).find_by_user_and_category("u1", "Food") is not None
    reader.close()


def test_session_dependency_rolls_back_on_error(in_memory_database) -> None:
    dependency = get_session()
    session = next(dependency)
    session.add(_budget())
    session.flush()

    with pytest.raises(RuntimeError):
        dependency.throw(RuntimeError("handler failed"))

    reader = get_session()
    assert BudgetRepository(next(reader)).list_for_user("u1") == []
    reader.close()


def test_database_url_defaults_to_data_file(monkeypatch) -> None:
    monkeypatch.delenv(DB_URL_ENV_VAR, raising=False)

    assert get_database_url() == f"sqlite:///{DEFAULT_DB_PATH}"
    assert DEFAULT_DB_PATH.parent.name == "data"
