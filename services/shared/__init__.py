"""
Shared utilities for the finance tracker services.

- settings: environment-driven configuration for the external budget service
- observability: telemetry, request context, and log privacy helpers
"""

from .settings import (
    REQUIRED_HTTP_ENV_VARS,
    SUPPORTED_BUDGET_PROVIDERS,
    SUPPORTED_FORECAST_STRATEGIES,
    BudgetServiceSettings,
    ExternalBudgetsEndpoint,
    SettingsError,
    load_budget_service_settings,
)

__all__ = [
    "REQUIRED_HTTP_ENV_VARS",
    "SUPPORTED_BUDGET_PROVIDERS",
    "SUPPORTED_FORECAST_STRATEGIES",
    "BudgetServiceSettings",
    "ExternalBudgetsEndpoint",
    "SettingsError",
    "load_budget_service_settings",
]
