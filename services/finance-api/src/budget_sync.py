"""
Keeps locally stored budgets and their mirrors in the external budget service in step.

There is no transaction spanning both stores, so each operation runs its steps
in a fixed order:

- create: external first (replacing any stale resource of the same name), then
  local; a local failure triggers a single compensating delete of the new
  external resource.
- update: local first, then the external resource under the name it was created
  with. An external failure is reported, the local change stays.
- delete: external names are tried in a fallback chain; "not found" and an
  indeterminate failure move to the next candidate, a definitive rejection
  aborts. Names still linked to another of the user's budgets are never
  deleted. Unless a rejection aborted, the local record goes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from shared.observability.privacy import scrub_free_text

from errors import (
    DuplicateBudgetError,
    ExternalNotFoundError,
    ExternalServiceError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from external_budgets import ExternalBudgetService, budget_resource_name
from periods import first_of_month, month_bounds, parse_month
from persistence.models import Budget
from persistence.repository import BudgetAction, BudgetRepository

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
NOTIFICATION_COMPARISON = "GREATER_THAN"
CENT = Decimal("0.01")


class FinalState(str, Enum):
    """How far the external half of a delete got."""

    FULLY_SYNCHRONIZED = "fully_synchronized"
    ALREADY_ABSENT = "already_absent"
    EXTERNAL_MAY_STILL_EXIST = "external_may_still_exist"


@dataclass(slots=True)
class DeletionReport:
    db_deleted: bool
    external_deleted: bool
    attempts: List[str] = field(default_factory=list)
    final_state: FinalState = FinalState.FULLY_SYNCHRONIZED
    external_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["final_state"] = self.final_state.value
        return payload


class BudgetSyncEngine:
    """
    Create, update, and delete budgets across the local store and the external service.

    Both collaborators are injected so tests can substitute doubles; the engine
    itself holds no state between calls.
    """

    def __init__(
        self,
        repository: BudgetRepository,
        budget_service: ExternalBudgetService,
        *,
        notification_email: Optional[str] = None,
        notification_threshold: float = 90.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._budget_service = budget_service
        self._notification_email = notification_email
        self._notification_threshold = notification_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_budgets(self, user_id: str, month: Optional[str] = None) -> List[Budget]:
        if not month:
            return self._repository.list_for_user(user_id)
        start, end = month_bounds(parse_month(month))
        return self._repository.list_for_user(user_id, month_start=start, month_end=end)

    def get_budget(self, budget_id: str, requester_id: str) -> Budget:
        return self._owned_budget(budget_id, requester_id)

    async def create_budget(
        self,
        user_id: str,
        category: str,
        amount: Decimal | float | int | str,
        currency: Optional[str] = DEFAULT_CURRENCY,
        description: Optional[str] = None,
        *,
        source_ip: Optional[str] = None,
    ) -> Budget:
        limit = normalize_amount(amount)
        category = normalize_category(category)
        currency = normalize_currency(currency)

        if self._repository.find_by_user_and_category(user_id, category) is not None:
            raise DuplicateBudgetError(f"Budget for category '{category}' already exists")

        name = budget_resource_name(user_id, category)
        holder = self._repository.find_holder_of_external_resource(user_id, name)
        if holder is not None:
            # A renamed budget still mirrors into this name; replacing it would orphan that budget.
            raise DuplicateBudgetError(
                f"External budget '{name}' is still linked to your '{holder.category}' budget"
            )
        resource_id = await self._create_external(name, limit, currency)
        notified = await self._register_notification(name)

        budget = Budget(
            id=str(uuid4()),
            user_id=user_id,
            category=category,
            amount=limit,
            currency=currency,
            month=first_of_month(self._clock().date()),
            description=description,
            external_resource_id=resource_id,
        )
        try:
            self._repository.save(
                budget,
                action=BudgetAction.CREATE,
                source_ip=source_ip,
                details={"external_resource_id": resource_id, "notification_registered": notified},
            )
        except DuplicateBudgetError:
            # A concurrent create won the unique (user, category) slot; the external
            # resource under this name is now theirs, so it must not be removed.
            logger.warning(
                {
                    "event": "budget_create_lost_race",
                    "user_id": user_id,
                    "category": category,
                    "external_resource_id": resource_id,
                }
            )
            raise
        except PersistenceError as exc:
            await self._compensate_create(resource_id, exc)
            raise

        logger.info(
            {
                "event": "budget_created",
                "budget_id": budget.id,
                "external_resource_id": resource_id,
                "notification_registered": notified,
                "budget": scrub_free_text(
                    {
                        "category": category,
                        "amount": limit,
                        "currency": currency,
                        "description": description,
                    }
                ),
            }
        )
        return budget

    async def update_budget(
        self,
        budget_id: str,
        requester_id: str,
        *,
        amount: Decimal | float | int | str,
        category: str,
        month: Optional[str | date] = None,
        description: Optional[str] = None,
        source_ip: Optional[str] = None,
    ) -> Budget:
        budget = self._owned_budget(budget_id, requester_id)
        limit = normalize_amount(amount)
        new_category = normalize_category(category)
        new_month = parse_month(month) if month else budget.month

        previous_category = budget.category
        if new_category != previous_category:
            clash = self._repository.find_by_user_and_category(budget.user_id, new_category)
            if clash is not None and clash.id != budget.id:
                raise DuplicateBudgetError(f"Budget for category '{new_category}' already exists")

        # The external resource keeps the name it was created under; a category
        # change is local only.
        external_name = budget.external_resource_id or budget_resource_name(budget.user_id, previous_category)

        budget.amount = limit
        budget.category = new_category
        budget.month = new_month
        budget.description = description
        budget.currency = budget.currency or DEFAULT_CURRENCY
        self._repository.save(
            budget,
            action=BudgetAction.UPDATE,
            source_ip=source_ip,
            details={
                "previous_category": previous_category,
                "category": new_category,
                "amount": str(limit),
                "month": new_month.isoformat(),
                "external_resource_id": external_name,
            },
        )

        try:
            await self._budget_service.update(external_name, limit, budget.currency)
        except ExternalNotFoundError:
            logger.warning(
                {
                    "event": "budget_update_external_missing",
                    "budget_id": budget.id,
                    "external_resource_id": external_name,
                }
            )
            await self._budget_service.create(external_name, limit, budget.currency)
            if budget.external_resource_id != external_name:
                budget.external_resource_id = external_name
                self._repository.save(budget)
        except ExternalServiceError as exc:
            logger.error(
                {
                    "event": "budget_update_out_of_sync",
                    "budget_id": budget.id,
                    "external_resource_id": external_name,
                    "error": exc.message,
                }
            )
            raise

        logger.info(
            {
                "event": "budget_updated",
                "budget_id": budget.id,
                "external_resource_id": external_name,
                "category_changed": new_category != previous_category,
            }
        )
        return budget

    async def delete_budget(
        self,
        budget_id: str,
        requester_id: str,
        *,
        source_ip: Optional[str] = None,
    ) -> DeletionReport:
        budget = self._owned_budget(budget_id, requester_id)
        reconstructed = budget_resource_name(budget.user_id, budget.category)
        candidates = [("deterministic name", reconstructed)]
        if budget.external_resource_id and budget.external_resource_id != reconstructed:
            candidates.append(("stored external id", budget.external_resource_id))

        report = DeletionReport(db_deleted=False, external_deleted=False)
        unresolved = False
        for label, candidate in candidates:
            holder = self._repository.find_holder_of_external_resource(
                budget.user_id, candidate, exclude_id=budget.id
            )
            if holder is not None:
                report.attempts.append(f"{label}: {candidate} (skipped, linked to budget {holder.id})")
                unresolved = True
                continue
            report.attempts.append(f"{label}: {candidate}")
            try:
                await self._budget_service.delete(candidate)
            except ExternalNotFoundError:
                continue
            except ExternalServiceError as exc:
                if not exc.indeterminate:
                    logger.error(
                        {
                            "event": "budget_delete_rejected",
                            "budget_id": budget.id,
                            "external_resource_id": candidate,
                            "remote_code": exc.remote_code,
                            "error": exc.message,
                        }
                    )
                    raise
                logger.warning(
                    {
                        "event": "budget_delete_external_indeterminate",
                        "budget_id": budget.id,
                        "external_resource_id": candidate,
                        "error": exc.message,
                    }
                )
                # The resource may live under the next candidate, so keep going.
                report.external_error = exc.message
                unresolved = True
                continue
            report.external_deleted = True
            report.final_state = FinalState.FULLY_SYNCHRONIZED
            break
        else:
            if unresolved:
                report.final_state = FinalState.EXTERNAL_MAY_STILL_EXIST
            else:
                # Every candidate name was already gone.
                report.external_deleted = True
                report.final_state = FinalState.ALREADY_ABSENT

        self._repository.delete(
            budget,
            source_ip=source_ip,
            details={
                "external_deleted": report.external_deleted,
                "attempts": list(report.attempts),
                "final_state": report.final_state.value,
            },
        )
        report.db_deleted = True
        logger.info({"event": "budget_deleted", "budget_id": budget_id, **report.as_dict()})
        return report

    def _owned_budget(self, budget_id: str, requester_id: str) -> Budget:
        budget = self._repository.find_by_id(budget_id)
        if budget is None:
            raise NotFoundError("Budget not found")
        if budget.user_id != requester_id:
            raise ForbiddenError("Not authorized")
        return budget

    async def _create_external(self, name: str, limit: Decimal, currency: str) -> str:
        # A resource left behind by an earlier failed cleanup is replaced, not reused.
        try:
            await self._budget_service.describe(name)
        except ExternalNotFoundError:
            pass
        else:
            logger.warning({"event": "budget_create_replacing_stale", "external_resource_id": name})
            try:
                await self._budget_service.delete(name)
            except ExternalNotFoundError:
                pass
        return await self._budget_service.create(name, limit, currency)

    async def _register_notification(self, name: str) -> bool:
        if not self._notification_email:
            return False
        try:
            await self._budget_service.create_notification(
                name,
                self._notification_threshold,
                NOTIFICATION_COMPARISON,
                self._notification_email,
            )
        except ExternalNotFoundError as exc:
            raise ExternalServiceError(
                f"Budget '{name}' disappeared before its notification could be registered"
            ) from exc
        return True

    async def _compensate_create(self, resource_id: str, original: PersistenceError) -> None:
        try:
            await self._budget_service.delete(resource_id, single_attempt=True)
        except ExternalNotFoundError:
            logger.info({"event": "budget_create_compensation_noop", "external_resource_id": resource_id})
        except Exception as cleanup_exc:  # noqa: BLE001 - the persistence error is what the caller sees
            logger.error(
                {
                    "event": "budget_create_compensation_failed",
                    "external_resource_id": resource_id,
                    "original_error": original.message,
                    "error": str(cleanup_exc),
                }
            )
        else:
            logger.warning(
                {
                    "event": "budget_create_compensated",
                    "external_resource_id": resource_id,
                    "original_error": original.message,
                }
            )


def normalize_amount(value: Decimal | float | int | str | None) -> Decimal:
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation
        amount = amount.quantize(CENT)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Amount must be a number (received '{value}')") from exc
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


def normalize_category(value: Optional[str]) -> str:
    category = (value or "").strip()
    if not category:
        raise ValidationError("Category is required")
    return category


def normalize_currency(value: Optional[str]) -> str:
    currency = (value or DEFAULT_CURRENCY).strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Currency must be a 3-letter ISO code (received '{value}')")
    return currency
