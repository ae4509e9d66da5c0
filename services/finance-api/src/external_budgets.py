from __future__ import annotations

"""
Client abstraction for the external cost-management budget service.

Budgets in the external service are named resources: the name is derived from
(user, category) and is the only lookup key, so any caller can reconstruct it
without a stored mapping. Implementations translate every failure into the
errors in `errors.py`, with "not found" kept as its own type so callers can
recover from it structurally.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from shared.observability.telemetry import current_request_id
from shared.settings import BudgetServiceSettings, ExternalBudgetsEndpoint

from errors import ExternalNotFoundError, ExternalServiceError
from http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
# Statuses after which the remote side may or may not have applied the change.
INDETERMINATE_STATUS_CODES = frozenset({408, 429})


def budget_resource_name(user_id: str, category: str) -> str:
    """Deterministic external name for a (user, category) budget."""
    return f"user-{user_id}-{category}"


@dataclass(slots=True)
class ExternalBudget:
    name: str
    limit_amount: Decimal
    currency_unit: str = DEFAULT_CURRENCY
    actual_spend: Decimal = Decimal("0")
    time_unit: str = "MONTHLY"


@runtime_checkable
class ExternalBudgetService(Protocol):
    """
    Interface for the external budget tracker.

    `describe` and `delete` raise ExternalNotFoundError when no resource has the
    given name; every other failure surfaces as ExternalServiceError.
    """

    name: str

    async def describe(self, name: str) -> ExternalBudget:
        ...

    async def create(self, name: str, limit_amount: Decimal, currency_unit: str) -> str:
        ...

    async def update(self, name: str, limit_amount: Decimal, currency_unit: Optional[str] = None) -> None:
        ...

    async def delete(self, name: str, *, single_attempt: bool = False) -> None:
        ...

    async def create_notification(
        self,
        name: str,
        threshold_percent: float,
        comparison_type: str,
        subscriber_email: str,
    ) -> None:
        ...

    async def get_cost_forecast(self, period_start: date, period_end: date) -> Decimal:
        ...


class InMemoryBudgetService:
    """
    Process-local budget tracker for development stacks and tests.

    Mirrors the remote contract closely enough that engine behaviour (stale
    resource replacement, not-found fallbacks) can be exercised without a network.
    """

    name = "memory"

    def __init__(self, forecast_amount: Decimal | int | str = Decimal("0")) -> None:
        self.budgets: Dict[str, ExternalBudget] = {}
        self.notifications: Dict[str, list[Dict[str, Any]]] = {}
        self.forecast_amount = Decimal(forecast_amount)

    async def describe(self, name: str) -> ExternalBudget:
        budget = self.budgets.get(name)
        if budget is None:
            raise ExternalNotFoundError(name)
        return ExternalBudget(
            name=budget.name,
            limit_amount=budget.limit_amount,
            currency_unit=budget.currency_unit,
            actual_spend=budget.actual_spend,
            time_unit=budget.time_unit,
        )

    async def create(self, name: str, limit_amount: Decimal, currency_unit: str) -> str:
        if name in self.budgets:
            raise ExternalServiceError(
                f"Budget '{name}' already exists",
                remote_code="DuplicateRecordException",
                status=400,
            )
        self.budgets[name] = ExternalBudget(name=name, limit_amount=Decimal(limit_amount), currency_unit=currency_unit)
        return name

    async def update(self, name: str, limit_amount: Decimal, currency_unit: Optional[str] = None) -> None:
        existing = self.budgets.get(name)
        if existing is None:
            raise ExternalNotFoundError(name)
        existing.limit_amount = Decimal(limit_amount)
        existing.currency_unit = currency_unit or existing.currency_unit or DEFAULT_CURRENCY

    async def delete(self, name: str, *, single_attempt: bool = False) -> None:
        if self.budgets.pop(name, None) is None:
            raise ExternalNotFoundError(name)
        self.notifications.pop(name, None)

    async def create_notification(
        self,
        name: str,
        threshold_percent: float,
        comparison_type: str,
        subscriber_email: str,
    ) -> None:
        if name not in self.budgets:
            raise ExternalNotFoundError(name)
        self.notifications.setdefault(name, []).append(
            {
                "threshold": threshold_percent,
                "comparison_operator": comparison_type,
                "subscriber": subscriber_email,
            }
        )

    async def get_cost_forecast(self, period_start: date, period_end: date) -> Decimal:
        return self.forecast_amount


class HttpBudgetService:
    """
    REST client for the remote budget tracker.

    All calls go through ResilientHttpClient, so transient failures are retried
    with backoff inside the configured timeout; 404 is never retried.
    """

    name = "http"

    def __init__(self, endpoint: ExternalBudgetsEndpoint, *, client: ResilientHttpClient) -> None:
        self._account_path = f"/accounts/{quote(endpoint.account_id, safe='')}"
        self._client = client

    async def describe(self, name: str) -> ExternalBudget:
        payload = await self._describe_raw(name)
        return _parse_budget(name, payload)

    async def create(self, name: str, limit_amount: Decimal, currency_unit: str) -> str:
        body = {
            "name": name,
            "budget_type": "COST",
            "time_unit": "MONTHLY",
            "limit": {"amount": str(limit_amount), "unit": currency_unit},
            "cost_types": {
                "include_tax": False,
                "include_subscription": True,
                "use_blended": False,
            },
        }
        response = await self._call("POST", f"{self._account_path}/budgets", name=name, json=body)
        try:
            created = response.json()
        except ValueError:
            created = {}
        return created.get("name") or name

    async def update(self, name: str, limit_amount: Decimal, currency_unit: Optional[str] = None) -> None:
        # Send the full resource back so settings owned by the remote side survive the update.
        current = await self._describe_raw(name)
        existing_unit = (current.get("limit") or {}).get("unit")
        new_budget = {
            **current,
            "limit": {
                "amount": str(limit_amount),
                "unit": currency_unit or existing_unit or DEFAULT_CURRENCY,
            },
        }
        await self._call("PUT", self._budget_path(name), name=name, json=new_budget)

    async def delete(self, name: str, *, single_attempt: bool = False) -> None:
        await self._call(
            "DELETE",
            self._budget_path(name),
            name=name,
            max_attempts=1 if single_attempt else None,
        )

    async def create_notification(
        self,
        name: str,
        threshold_percent: float,
        comparison_type: str,
        subscriber_email: str,
    ) -> None:
        body = {
            "notification": {
                "notification_type": "ACTUAL",
                "comparison_operator": comparison_type,
                "threshold": threshold_percent,
                "threshold_type": "PERCENTAGE",
            },
            "subscribers": [{"subscription_type": "EMAIL", "address": subscriber_email}],
        }
        await self._call("POST", f"{self._budget_path(name)}/notifications", name=name, json=body)

    async def get_cost_forecast(self, period_start: date, period_end: date) -> Decimal:
        body = {
            "time_period": {"start": period_start.isoformat(), "end": period_end.isoformat()},
            "metric": "UNBLENDED_COST",
            "granularity": "MONTHLY",
        }
        response = await self._call("POST", f"{self._account_path}/cost-forecast", name=None, json=body)
        try:
            return Decimal(str(response.json()["total"]["amount"]))
        except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
            raise ExternalServiceError(f"Malformed cost forecast response: {exc}") from exc

    def _budget_path(self, name: str) -> str:
        return f"{self._account_path}/budgets/{quote(name, safe='')}"

    async def _describe_raw(self, name: str) -> Dict[str, Any]:
        response = await self._call("GET", self._budget_path(name), name=name)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"Malformed budget description for '{name}'") from exc
        return payload.get("budget", payload)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        name: Optional[str],
        max_attempts: Optional[int] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response, _ = await self._client.request(
                method,
                path,
                request_id=current_request_id(),
                max_attempts=max_attempts,
                **kwargs,
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404 and name is not None:
                raise ExternalNotFoundError(name) from exc
            remote_code = _remote_error_code(exc.response)
            raise ExternalServiceError(
                f"External budget service rejected {method} {path} with {status}"
                + (f" ({remote_code})" if remote_code else ""),
                remote_code=remote_code,
                status=status,
                indeterminate=status >= 500 or status in INDETERMINATE_STATUS_CODES,
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalServiceError(
                f"External budget service unreachable for {method} {path}: {exc}",
                indeterminate=True,
            ) from exc
        return response


def _remote_error_code(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        code = payload.get("code") or payload.get("error")
        return str(code) if code else None
    return None


def _parse_budget(name: str, payload: Dict[str, Any]) -> ExternalBudget:
    try:
        limit = payload["limit"]
        actual = ((payload.get("calculated_spend") or {}).get("actual_spend") or {}).get("amount") or "0"
        return ExternalBudget(
            name=payload.get("name") or name,
            limit_amount=Decimal(str(limit["amount"])),
            currency_unit=limit.get("unit") or DEFAULT_CURRENCY,
            actual_spend=Decimal(str(actual)),
            time_unit=payload.get("time_unit") or "MONTHLY",
        )
    except (KeyError, TypeError, InvalidOperation) as exc:
        raise ExternalServiceError(f"Malformed budget description for '{name}': {exc}") from exc


def build_budget_service(
    settings: BudgetServiceSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ExternalBudgetService:
    """
    Factory that instantiates the configured external budget service client.
    """

    if settings.provider_name == "memory":
        return InMemoryBudgetService()
    if settings.provider_name == "http":
        if settings.endpoint is None:
            raise ValueError("HTTP budget service requires an endpoint")
        client = ResilientHttpClient(
            base_url=settings.endpoint.base_url,
            timeout=settings.timeout_seconds,
            max_attempts=settings.max_attempts,
            transport=transport,
        )
        logger.info(
            {
                "event": "budget_service_configured",
                "provider": settings.provider_name,
                "base_url": settings.endpoint.base_url,
                "timeout_seconds": settings.timeout_seconds,
                "max_attempts": settings.max_attempts,
            }
        )
        return HttpBudgetService(settings.endpoint, client=client)

    raise ValueError(f"Unsupported budget service provider '{settings.provider_name}'")
