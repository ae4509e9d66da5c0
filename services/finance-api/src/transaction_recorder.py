"""Records income/expense entries and attaches the budget warning for expenses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from shared.observability.privacy import scrub_free_text

from budget_sync import normalize_amount
from errors import ForbiddenError, NotFoundError, ValidationError
from forecast_warning import ForecastResult, ForecastWarningEngine
from persistence.models import Transaction
from persistence.repository import TransactionRepository, TransactionType

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Uncategorized"


@dataclass(slots=True)
class RecordedTransaction:
    transaction: Transaction
    warning: Optional[ForecastResult] = None


class TransactionRecorder:
    def __init__(
        self,
        repository: TransactionRepository,
        warnings: ForecastWarningEngine,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._warnings = warnings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record(
        self,
        user_id: str,
        *,
        title: str,
        amount: Decimal | float | int | str,
        type: str,
        category: Optional[str] = None,
        date: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> RecordedTransaction:
        """
        Persist a transaction, then evaluate the category budget if it is an expense.

        The warning check runs after the commit so the new expense counts toward
        month-to-date spend.
        """
        transaction = Transaction(
            user_id=user_id,
            title=_require_title(title),
            amount=normalize_amount(amount),
            type=_coerce_type(type).value,
            category=(category or "").strip() or DEFAULT_CATEGORY,
            date=_as_utc(date) if date else self._clock(),
            description=description,
        )
        saved = self._repository.add(transaction)

        warning: Optional[ForecastResult] = None
        if saved.type == TransactionType.EXPENSE.value:
            warning = await self._warnings.evaluate(user_id, saved.category, saved.amount)

        logger.info(
            {
                "event": "transaction_recorded",
                "transaction_id": saved.id,
                "type": saved.type,
                "category": saved.category,
                "warning_level": warning.level.value if warning else None,
                "transaction": scrub_free_text({"title": title, "description": description}),
            }
        )
        return RecordedTransaction(transaction=saved, warning=warning)

    def list(self, user_id: str) -> List[Transaction]:
        return self._repository.list_for_user(user_id)

    def update(
        self,
        transaction_id: str,
        requester_id: str,
        *,
        title: str,
        amount: Decimal | float | int | str,
        type: str,
        category: str,
        date: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """Replace the editable fields; `date` is kept when not given."""
        transaction = self._owned(transaction_id, requester_id)
        transaction.title = _require_title(title)
        transaction.amount = normalize_amount(amount)
        transaction.type = _coerce_type(type).value
        transaction.category = (category or "").strip() or DEFAULT_CATEGORY
        transaction.description = description
        if date:
            transaction.date = _as_utc(date)
        return self._repository.save(transaction)

    def delete(self, transaction_id: str, requester_id: str) -> None:
        transaction = self._owned(transaction_id, requester_id)
        self._repository.delete(transaction)

    def _owned(self, transaction_id: str, requester_id: str) -> Transaction:
        transaction = self._repository.find_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        if transaction.user_id != requester_id:
            raise ForbiddenError("Not authorized")
        return transaction


def _require_title(title: Optional[str]) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError("Title is required")
    return cleaned


def _coerce_type(value: str) -> TransactionType:
    try:
        return TransactionType((value or "").strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Type must be 'income' or 'expense' (received '{value}')") from exc


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
