"""Budget and transaction data access helpers."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterator, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import DuplicateBudgetError, PersistenceError
from persistence.models import Budget, BudgetAuditEvent, Transaction


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class BudgetAction(str, Enum):
    """Audit actions recorded against a budget."""

    CREATE = "create_budget"
    UPDATE = "update_budget"
    DELETE = "delete_budget"


@contextmanager
def _reading(db: Session, what: str) -> Iterator[None]:
    """Roll back and raise PersistenceError when a query fails."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Failed to load {what}: {exc}") from exc


class BudgetRepository:
    """Thin repository that encapsulates budget persistence operations."""

    def __init__(self, db: Session):
        self._db = db

    def find_by_id(self, budget_id: str) -> Budget | None:
        with _reading(self._db, "budget"):
            return self._db.get(Budget, budget_id)

    def find_by_user_and_category(self, user_id: str, category: str) -> Budget | None:
        statement = select(Budget).where(Budget.user_id == user_id, Budget.category == category)
        with _reading(self._db, "budget"):
            return self._db.scalars(statement).first()

    def find_holder_of_external_resource(
        self,
        user_id: str,
        resource_id: str,
        *,
        exclude_id: str | None = None,
    ) -> Budget | None:
        """The user's budget whose external mirror lives under `resource_id`, if any."""
        statement = select(Budget).where(
            Budget.user_id == user_id,
            Budget.external_resource_id == resource_id,
        )
        if exclude_id is not None:
            statement = statement.where(Budget.id != exclude_id)
        with _reading(self._db, "budget"):
            return self._db.scalars(statement).first()

    def list_for_user(
        self,
        user_id: str,
        *,
        month_start: date | None = None,
        month_end: date | None = None,
    ) -> List[Budget]:
        statement = select(Budget).where(Budget.user_id == user_id)
        if month_start is not None:
            statement = statement.where(Budget.month >= month_start)
        if month_end is not None:
            statement = statement.where(Budget.month < month_end)
        statement = statement.order_by(Budget.month.desc(), Budget.created_at.desc())
        with _reading(self._db, "budgets"):
            return list(self._db.scalars(statement))

    def save(
        self,
        budget: Budget,
        *,
        action: BudgetAction | None = None,
        source_ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Budget:
        """Persist `budget`, committing the audit event (when given) in the same transaction."""
        try:
            self._db.add(budget)
            if action is not None:
                self._db.flush()
                self._record_event(budget, action, source_ip=source_ip, details=details)
            self._db.commit()
        except SQLAlchemyError as exc:
            self._translate(budget, exc)
        with _reading(self._db, "budget"):
            self._db.refresh(budget)
        return budget

    def delete(
        self,
        budget: Budget,
        *,
        source_ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._record_event(budget, BudgetAction.DELETE, source_ip=source_ip, details=details)
            self._db.delete(budget)
            self._db.commit()
        except SQLAlchemyError as exc:
            self._translate(budget, exc)

    def events_for(self, budget_id: str) -> List[BudgetAuditEvent]:
        statement = (
            select(BudgetAuditEvent)
            .where(BudgetAuditEvent.budget_id == budget_id)
            .order_by(BudgetAuditEvent.id)
        )
        with _reading(self._db, "budget audit events"):
            return list(self._db.scalars(statement))

    def _record_event(
        self,
        budget: Budget,
        action: BudgetAction,
        *,
        source_ip: str | None,
        details: dict[str, Any] | None,
    ) -> None:
        event = BudgetAuditEvent(
            budget_id=budget.id,
            user_id=budget.user_id,
            action=action.value,
            source_ip=source_ip,
            details=details,
        )
        self._db.add(event)

    def _translate(self, budget: Budget, exc: SQLAlchemyError) -> None:
        # Read before rollback expires the instance.
        category = budget.__dict__.get("category")
        self._db.rollback()
        if isinstance(exc, IntegrityError):
            raise DuplicateBudgetError(f"Budget for category '{category}' already exists") from exc
        raise PersistenceError(f"Failed to persist budget: {exc}") from exc


class TransactionRepository:
    """Thin repository that encapsulates transaction persistence operations."""

    def __init__(self, db: Session):
        self._db = db

    def add(self, transaction: Transaction) -> Transaction:
        self._db.add(transaction)
        self._commit()
        with _reading(self._db, "transaction"):
            self._db.refresh(transaction)
        return transaction

    def save(self, transaction: Transaction) -> Transaction:
        return self.add(transaction)

    def find_by_id(self, transaction_id: str) -> Transaction | None:
        with _reading(self._db, "transaction"):
            return self._db.get(Transaction, transaction_id)

    def list_for_user(self, user_id: str) -> List[Transaction]:
        statement = select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.date.desc())
        with _reading(self._db, "transactions"):
            return list(self._db.scalars(statement))

    def find_by_user_category_and_date_range(
        self,
        user_id: str,
        category: str,
        transaction_type: TransactionType,
        start: datetime,
        end: datetime,
    ) -> List[Transaction]:
        """Transactions dated within the half-open range [start, end)."""
        statement = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.category == category,
            Transaction.type == transaction_type.value,
            Transaction.date >= start,
            Transaction.date < end,
        )
        with _reading(self._db, "transactions"):
            return list(self._db.scalars(statement))

    def delete(self, transaction: Transaction) -> None:
        self._db.delete(transaction)
        self._commit()

    def _commit(self) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError(f"Failed to persist transaction: {exc}") from exc
