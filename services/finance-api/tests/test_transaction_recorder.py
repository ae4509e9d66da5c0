from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import ForbiddenError, NotFoundError, ValidationError
from fakes import fixed_clock
from forecast_warning import ForecastWarningEngine, Severity
from persistence.models import Budget
from persistence.repository import BudgetRepository, TransactionRepository
from transaction_recorder import TransactionRecorder

pytestmark = pytest.mark.anyio

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def recorder(db_session) -> TransactionRecorder:
    BudgetRepository(db_session).save(
        Budget(user_id="u1", category="Food", amount=Decimal("100.00"), currency="USD", month=date(2026, 3, 1))
    )
    transactions = TransactionRepository(db_session)
    warnings = ForecastWarningEngine(BudgetRepository(db_session), transactions, clock=fixed_clock(NOW))
    return TransactionRecorder(transactions, warnings, clock=fixed_clock(NOW))


async def test_expense_counts_toward_its_own_warning(recorder) -> None:
    first = await recorder.record("u1", title="Market", amount="50", type="expense", category="Food")
    second = await recorder.record("u1", title="Bakery", amount="45", type="EXPENSE", category="Food")

    assert first.warning is None
    assert second.warning is not None
    assert second.warning.level is Severity.WARNING
    assert second.warning.percentage == 95.0
    assert second.warning.new_transaction_amount == Decimal("45.00")
    assert second.transaction.date.replace(tzinfo=timezone.utc) == NOW


async def test_income_never_triggers_a_warning(recorder) -> None:
    result = await recorder.record("u1", title="Refund", amount="500", type="income", category="Food")

    assert result.warning is None
    assert result.transaction.type == "income"


async def test_missing_category_defaults_to_uncategorized(recorder) -> None:
    result = await recorder.record("u1", title="Misc", amount="5", type="expense")

    assert result.transaction.category == "Uncategorized"
    assert result.warning is None


@pytest.mark.parametrize(
    ("title", "amount", "type_"),
    [("", "10", "expense"), ("Lunch", "-1", "expense"), ("Lunch", "10", "transfer")],
)
async def test_record_validates_input(recorder, title, amount, type_) -> None:
    with pytest.raises(ValidationError):
        await recorder.record("u1", title=title, amount=amount, type=type_)
    assert recorder.list("u1") == []


async def test_naive_dates_are_treated_as_utc(recorder) -> None:
    naive = datetime(2026, 3, 5, 8, 30)

    result = await recorder.record("u1", title="Coffee", amount="3.5", type="expense", date=naive)

    assert result.transaction.date.replace(tzinfo=None) == naive


async def test_update_and_delete_enforce_ownership(recorder) -> None:
    recorded = await recorder.record("u1", title="Taxi", amount="12", type="expense", category="Travel")
    transaction_id = recorded.transaction.id

    with pytest.raises(ForbiddenError):
        recorder.update(transaction_id, "u2", title="Taxi", amount="12", type="expense", category="Travel")
    with pytest.raises(ForbiddenError):
        recorder.delete(transaction_id, "u2")

    updated = recorder.update(
        transaction_id,
        "u1",
        title="Airport taxi",
        amount="30",
        type="expense",
        category="Travel",
        date=NOW - timedelta(days=1),
        description="flight home",
    )
    assert updated.title == "Airport taxi"
    assert updated.description == "flight home"
    assert updated.amount == Decimal("30.00")

    recorder.delete(transaction_id, "u1")
    with pytest.raises(NotFoundError):
        recorder.delete(transaction_id, "u1")


async def test_list_returns_newest_first(recorder) -> None:
    await recorder.record("u1", title="Old", amount="1", type="expense", date=NOW - timedelta(days=3))
    await recorder.record("u1", title="New", amount="1", type="expense", date=NOW)
    await recorder.record("u2", title="Other", amount="1", type="expense", date=NOW)

    assert [transaction.title for transaction in recorder.list("u1")] == ["New", "Old"]
