from __future__ import annotations

"""
Budget health checks run whenever an expense is recorded.

The engine compares month-to-date spend (or the external service's month-end
forecast) against the category budget and classifies the result:

- above 100%: critical, with how far over the limit the spend is
- exactly 100%: critical, limit reached
- 90% up to 100%: warning
- below 90%: no result at all

Callers invoke `evaluate` after the new expense has been persisted, so that
expense is already part of the month-to-date sum. The prospective amount is
echoed back in the result for display but is never added a second time.

A warning must never block the write that triggered it: every failure is
logged and reported as "no warning".
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from external_budgets import ExternalBudgetService, budget_resource_name
from periods import month_datetime_bounds
from persistence.models import Budget
from persistence.repository import BudgetRepository, TransactionRepository, TransactionType

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = Decimal("90")
LIMIT_PERCENT = Decimal("100")
_TWO_PLACES = Decimal("0.01")


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ForecastStrategy(str, Enum):
    """Where month spend comes from: local transactions or the external forecast."""

    TRANSACTIONS = "transactions"
    EXTERNAL_FORECAST = "external_forecast"


@dataclass(slots=True)
class ForecastResult:
    category: str
    current_spending: Decimal
    new_transaction_amount: Decimal
    total_forecasted: Decimal
    percentage: float
    level: Severity
    message: str
    details: str
    budget_limit: Decimal
    currency: str
    strategy: ForecastStrategy

    def as_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "current_spending": float(self.current_spending),
            "new_transaction_amount": float(self.new_transaction_amount),
            "total_forecasted": float(self.total_forecasted),
            "percentage": self.percentage,
            "level": self.level.value,
            "message": self.message,
            "details": self.details,
            "budget_limit": float(self.budget_limit),
            "currency": self.currency,
            "strategy": self.strategy.value,
        }


def classify(percentage: Decimal) -> Optional[Severity]:
    if percentage >= LIMIT_PERCENT:
        return Severity.CRITICAL
    if percentage >= WARNING_THRESHOLD:
        return Severity.WARNING
    return None


class ForecastWarningEngine:
    def __init__(
        self,
        budgets: BudgetRepository,
        transactions: TransactionRepository,
        budget_service: Optional[ExternalBudgetService] = None,
        *,
        strategy: ForecastStrategy | str = ForecastStrategy.TRANSACTIONS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._budgets = budgets
        self._transactions = transactions
        self._budget_service = budget_service
        self._strategy = _coerce_strategy(strategy)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(
        self,
        user_id: str,
        category: str,
        prospective_amount: Decimal | float | int | str,
    ) -> Optional[ForecastResult]:
        try:
            budget = self._budgets.find_by_user_and_category(user_id, category)
            if budget is None or budget.amount <= 0:
                return None
            new_amount = Decimal(str(prospective_amount))

            if self._strategy is ForecastStrategy.EXTERNAL_FORECAST and self._budget_service is not None:
                try:
                    return await self._evaluate_external(budget, new_amount)
                except Exception as exc:  # noqa: BLE001 - any external failure falls back to local data
                    logger.warning(
                        {
                            "event": "forecast_external_fallback",
                            "budget_id": budget.id,
                            "category": category,
                            "error": str(exc),
                        }
                    )
            return self._evaluate_transactions(budget, new_amount)
        except Exception as exc:  # noqa: BLE001 - warnings never fail the expense write
            logger.error(
                {
                    "event": "forecast_warning_failed",
                    "category": category,
                    "error": str(exc),
                }
            )
            return None

    def _evaluate_transactions(self, budget: Budget, new_amount: Decimal) -> Optional[ForecastResult]:
        start, end = month_datetime_bounds(self._clock())
        expenses = self._transactions.find_by_user_category_and_date_range(
            budget.user_id,
            budget.category,
            TransactionType.EXPENSE,
            start,
            end,
        )
        current_spending = sum((Decimal(expense.amount) for expense in expenses), Decimal("0"))
        percentage = current_spending / Decimal(budget.amount) * LIMIT_PERCENT
        level = classify(percentage)
        logger.info(
            {
                "event": "forecast_evaluated",
                "strategy": ForecastStrategy.TRANSACTIONS.value,
                "budget_id": budget.id,
                "expense_count": len(expenses),
                "percentage": float(percentage.quantize(_TWO_PLACES)),
                "level": level.value if level else None,
            }
        )
        if level is None:
            return None

        if percentage > LIMIT_PERCENT:
            message = f"Budget exceeded by {percentage - LIMIT_PERCENT:.2f}%"
        elif percentage == LIMIT_PERCENT:
            message = "Reached 100% of your budget"
        else:
            message = f"Approaching budget limit ({percentage:.2f}%)"

        return ForecastResult(
            category=budget.category,
            current_spending=current_spending,
            new_transaction_amount=new_amount,
            total_forecasted=current_spending,
            percentage=float(percentage.quantize(_TWO_PLACES)),
            level=level,
            message=message,
            details=f"Already spent {current_spending:.2f} this month (+{new_amount:.2f} new transaction)",
            budget_limit=Decimal(budget.amount),
            currency=budget.currency,
            strategy=ForecastStrategy.TRANSACTIONS,
        )

    async def _evaluate_external(self, budget: Budget, new_amount: Decimal) -> Optional[ForecastResult]:
        assert self._budget_service is not None
        name = budget.external_resource_id or budget_resource_name(budget.user_id, budget.category)
        external = await self._budget_service.describe(name)

        now = self._clock()
        _, month_end = month_datetime_bounds(now)
        forecast = await self._budget_service.get_cost_forecast(now.date(), month_end.date())

        total = external.actual_spend + forecast
        percentage = total / Decimal(budget.amount) * LIMIT_PERCENT
        level = classify(percentage)
        logger.info(
            {
                "event": "forecast_evaluated",
                "strategy": ForecastStrategy.EXTERNAL_FORECAST.value,
                "budget_id": budget.id,
                "external_resource_id": name,
                "percentage": float(percentage.quantize(_TWO_PLACES)),
                "level": level.value if level else None,
            }
        )
        if level is None:
            return None

        if percentage > LIMIT_PERCENT:
            message = f"Forecast exceeds budget by {percentage - LIMIT_PERCENT:.2f}%"
        elif percentage == LIMIT_PERCENT:
            message = "Forecast reaches 100% of your budget"
        else:
            message = f"Forecast at {percentage:.2f}% of your budget"

        return ForecastResult(
            category=budget.category,
            current_spending=external.actual_spend,
            new_transaction_amount=new_amount,
            total_forecasted=total,
            percentage=float(percentage.quantize(_TWO_PLACES)),
            level=level,
            message=message,
            details=f"Spent {external.actual_spend:.2f}, {forecast:.2f} more projected by month end",
            budget_limit=Decimal(budget.amount),
            currency=external.currency_unit or budget.currency,
            strategy=ForecastStrategy.EXTERNAL_FORECAST,
        )


def _coerce_strategy(value: ForecastStrategy | str) -> ForecastStrategy:
    if isinstance(value, ForecastStrategy):
        return value
    normalized = (value or "").strip().lower()
    if normalized in ("", "transactions"):
        return ForecastStrategy.TRANSACTIONS
    if normalized in ("external", "external_forecast"):
        return ForecastStrategy.EXTERNAL_FORECAST
    raise ValueError(f"Unsupported forecast strategy '{value}'")
