from __future__ import annotations

"""
Environment-driven settings for the finance API.

The budget sync engine and the forecast warning engine both depend on the
external budget service configuration (which client to build, where it lives,
how long to wait on it). Parsing those variables in one place keeps the
HTTP layer, the engines, and the tests reading the same values.
"""

import os
from dataclasses import dataclass
from typing import Optional

SUPPORTED_BUDGET_PROVIDERS = frozenset({"memory", "http"})
SUPPORTED_FORECAST_STRATEGIES = frozenset({"transactions", "external", "external_forecast"})
REQUIRED_HTTP_ENV_VARS = ("EXTERNAL_BUDGETS_BASE_URL", "EXTERNAL_BUDGETS_ACCOUNT_ID")


class SettingsError(RuntimeError):
    """Raised when service configuration cannot be constructed."""


@dataclass(frozen=True, slots=True)
class ExternalBudgetsEndpoint:
    base_url: str
    account_id: str


@dataclass(frozen=True, slots=True)
class BudgetServiceSettings:
    provider_name: str
    timeout_seconds: float
    max_attempts: int
    notification_email: Optional[str] = None
    notification_threshold: float = 90.0
    forecast_strategy: str = "transactions"
    endpoint: Optional[ExternalBudgetsEndpoint] = None


def load_budget_service_settings(
    *,
    default_provider: str = "memory",
    default_timeout: float = 10.0,
    default_max_attempts: int = 3,
    default_threshold: float = 90.0,
) -> BudgetServiceSettings:
    """
    Construct BudgetServiceSettings from the process environment.

    Args:
        default_provider: Client used when BUDGET_SERVICE_PROVIDER is unset.
        default_timeout: Per-call timeout for the external budget service.
        default_max_attempts: Attempts per call before giving up (retries only
            apply to transient failures).
        default_threshold: Actual-spend percentage that triggers the external
            notification.
    """

    provider_name = _normalize_choice(
        os.getenv("BUDGET_SERVICE_PROVIDER"),
        default_provider,
        SUPPORTED_BUDGET_PROVIDERS,
        "BUDGET_SERVICE_PROVIDER",
    )
    forecast_strategy = _normalize_choice(
        os.getenv("FORECAST_STRATEGY"),
        "transactions",
        SUPPORTED_FORECAST_STRATEGIES,
        "FORECAST_STRATEGY",
    )
    timeout_seconds = _parse_float(
        os.getenv("EXTERNAL_BUDGETS_TIMEOUT_SECONDS"), default_timeout, "EXTERNAL_BUDGETS_TIMEOUT_SECONDS"
    )
    max_attempts = _parse_int(
        os.getenv("EXTERNAL_BUDGETS_MAX_ATTEMPTS"), default_max_attempts, "EXTERNAL_BUDGETS_MAX_ATTEMPTS"
    )
    threshold = _parse_float(
        os.getenv("BUDGET_NOTIFICATION_THRESHOLD"), default_threshold, "BUDGET_NOTIFICATION_THRESHOLD"
    )
    if not 0 < threshold <= 100:
        raise SettingsError(f"BUDGET_NOTIFICATION_THRESHOLD must be within (0, 100] (received {threshold})")

    endpoint: Optional[ExternalBudgetsEndpoint] = None
    if provider_name == "http":
        endpoint = _build_endpoint()

    notification_email = (os.getenv("BUDGET_NOTIFICATION_EMAIL") or "").strip() or None

    return BudgetServiceSettings(
        provider_name=provider_name,
        timeout_seconds=timeout_seconds,
        max_attempts=max_attempts,
        notification_email=notification_email,
        notification_threshold=threshold,
        forecast_strategy=forecast_strategy,
        endpoint=endpoint,
    )


def _normalize_choice(raw_value: Optional[str], default: str, supported: frozenset[str], env_key: str) -> str:
    candidate = (raw_value or "").strip().lower()
    if not candidate:
        candidate = default

    if candidate not in supported:
        raise SettingsError(f"Unsupported {env_key} value '{candidate}'")
    return candidate


def _parse_float(raw_value: Optional[str], default: float, env_key: str) -> float:
    if raw_value is None or raw_value.strip() == "":
        return default

    try:
        return float(raw_value)
    except ValueError as exc:
        raise SettingsError(f"{env_key} must be numeric (received '{raw_value}')") from exc


def _parse_int(raw_value: Optional[str], default: int, env_key: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise SettingsError(f"{env_key} must be an integer (received '{raw_value}')") from exc


def _build_endpoint() -> ExternalBudgetsEndpoint:
    missing = [env_key for env_key in REQUIRED_HTTP_ENV_VARS if not os.getenv(env_key)]
    if missing:
        formatted_missing = ", ".join(missing)
        raise SettingsError(f"BUDGET_SERVICE_PROVIDER=http requires the following env vars: {formatted_missing}")

    return ExternalBudgetsEndpoint(
        base_url=os.environ["EXTERNAL_BUDGETS_BASE_URL"].strip().rstrip("/"),
        account_id=os.environ["EXTERNAL_BUDGETS_ACCOUNT_ID"].strip(),
    )
