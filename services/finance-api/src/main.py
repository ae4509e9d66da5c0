import logging
import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

SRC_DIR = Path(__file__).resolve().parent
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

SERVICES_ROOT = SRC_DIR.parents[1]
if str(SERVICES_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICES_ROOT))

from budget_sync import BudgetSyncEngine
from errors import ExternalServiceError, FinanceError, UnauthenticatedError
from external_budgets import ExternalBudgetService, build_budget_service
from forecast_warning import ForecastWarningEngine
from middleware.rate_limit import SimpleRateLimiter, build_default_rate_limiter, rate_limit_key
from persistence.database import get_session, init_db
from persistence.models import Budget, Transaction
from persistence.repository import BudgetRepository, TransactionRepository
from shared.observability.telemetry import (
    USER_ID_HEADER,
    bind_request_context,
    ensure_request_id,
    reset_request_context,
    setup_telemetry,
)
from shared.settings import BudgetServiceSettings, SettingsError, load_budget_service_settings
from transaction_recorder import TransactionRecorder

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance API")
setup_telemetry(app, service_name="finance-api")
app.state.rate_limiter = build_default_rate_limiter()

try:
    app.state.settings = load_budget_service_settings()
except SettingsError as exc:
    logger.error("Failed to load budget service settings: %s", exc)
    raise

# One client for the process; handlers reach it through `get_budget_service`.
app.state.budget_service = build_budget_service(app.state.settings)


DEFAULT_CORS_ORIGINS: List[str] = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

CORS_ENV_KEYS = (
    "FINANCE_CORS_ORIGINS",
    "CORS_ALLOWED_ORIGINS",
    "CORS_ORIGINS",
)

# Troubleshooting hints for definitive rejections during budget deletion.
DELETE_SUGGESTIONS = {
    "AccessDeniedException": "Check that the service credentials may delete budgets in the external account.",
    "InvalidParameterException": "Verify the budget name matches the external service's naming rules.",
}


def _resolve_cors_origins() -> List[str]:
    """
    Determine which origins are allowed to call the API.

    Accepts a comma-separated list via any env var in `CORS_ENV_KEYS` and falls
    back to localhost defaults for the web client's dev server.
    """

    for key in CORS_ENV_KEYS:
        raw_value = os.getenv(key)
        if not raw_value:
            continue
        candidates = [origin.strip() for origin in raw_value.split(",")]
        origins = [origin for origin in candidates if origin]
        if origins:
            # FastAPI expects ["*"] instead of mixing '*' with explicit origins.
            if any(origin == "*" for origin in origins):
                return ["*"]
            return origins
    return DEFAULT_CORS_ORIGINS


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = ensure_request_id(request)
    tokens = bind_request_context(request_id, request.headers.get(USER_ID_HEADER))
    try:
        response = await call_next(request)
        response.headers.setdefault("x-request-id", request_id)
        return response
    finally:
        reset_request_context(tokens)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    limiter: SimpleRateLimiter = app.state.rate_limiter
    client_id = rate_limit_key(request)
    allowed, retry_after = await limiter.allow(client_id)
    if allowed:
        return await call_next(request)

    retry_after_header = str(max(1, int(retry_after or 1)))
    logger.warning(
        {
            "event": "rate_limited",
            "request_id": getattr(request.state, "request_id", None),
            "client": client_id,
            "retry_after_seconds": retry_after,
        }
    )
    response = error_response(
        429,
        "rate_limit_exceeded",
        "Too many requests. Please retry shortly.",
    )
    response.headers["Retry-After"] = retry_after_header
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)


def error_response(status_code: int, error_code: str, details: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "details": details, **extra},
    )


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    return error_response(exc.status_code, exc.error_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return error_response(400, "validation_error", "; ".join(problems) or "Invalid request.")


def _client_ip(request: Request) -> str | None:
    client = request.client
    if client:
        return client.host
    return None


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER)) -> str:
    """Caller identity as established by the upstream auth layer."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthenticatedError("No user identity, authorization denied")
    return user_id


def get_settings(request: Request) -> BudgetServiceSettings:
    return request.app.state.settings


def get_budget_service(request: Request) -> ExternalBudgetService:
    return request.app.state.budget_service


def get_sync_engine(
    db: Session = Depends(get_session),
    budget_service: ExternalBudgetService = Depends(get_budget_service),
    settings: BudgetServiceSettings = Depends(get_settings),
) -> BudgetSyncEngine:
    return BudgetSyncEngine(
        BudgetRepository(db),
        budget_service,
        notification_email=settings.notification_email,
        notification_threshold=settings.notification_threshold,
    )


def get_transaction_recorder(
    db: Session = Depends(get_session),
    budget_service: ExternalBudgetService = Depends(get_budget_service),
    settings: BudgetServiceSettings = Depends(get_settings),
) -> TransactionRecorder:
    warnings = ForecastWarningEngine(
        BudgetRepository(db),
        TransactionRepository(db),
        budget_service,
        strategy=settings.forecast_strategy,
    )
    return TransactionRecorder(TransactionRepository(db), warnings)


def _serialize_budget(budget: Budget) -> Dict[str, Any]:
    return {
        "id": budget.id,
        "user_id": budget.user_id,
        "category": budget.category,
        "amount": float(budget.amount),
        "currency": budget.currency,
        "month": budget.month.isoformat(),
        "description": budget.description,
        "external_resource_id": budget.external_resource_id,
        "created_at": budget.created_at.isoformat() if budget.created_at else None,
        "updated_at": budget.updated_at.isoformat() if budget.updated_at else None,
    }


def _serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "user_id": transaction.user_id,
        "title": transaction.title,
        "amount": float(transaction.amount),
        "type": transaction.type,
        "category": transaction.category,
        "date": transaction.date.isoformat() if transaction.date else None,
        "description": transaction.description,
    }


@app.on_event("startup")
def on_startup() -> None:
    """Initialize persistence before serving requests."""
    init_db()


@app.get("/health")
def health_check(request: Request) -> dict:
    """Reports liveness plus which external budget client this process talks to."""
    return {
        "status": "ok",
        "service": "finance-api",
        "budget_service": request.app.state.budget_service.name,
    }


class BudgetCreatePayload(BaseModel):
    amount: Decimal
    category: str
    currency: Optional[str] = "USD"
    description: Optional[str] = None


class BudgetUpdatePayload(BaseModel):
    amount: Decimal
    category: str
    month: Optional[str] = None
    description: Optional[str] = None


@app.post("/budgets", status_code=201, response_model=None)
async def create_budget(
    payload: BudgetCreatePayload,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: BudgetSyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any] | JSONResponse:
    """Creates the external budget first, then the local record (compensating on local failure)."""
    try:
        budget = await engine.create_budget(
            user_id,
            payload.category,
            payload.amount,
            payload.currency,
            payload.description,
            source_ip=_client_ip(request),
        )
    except ExternalServiceError as exc:
        return error_response(500, "budget_sync_failed", f"Failed to create budget: {exc.message}")
    return _serialize_budget(budget)


@app.get("/budgets", response_model=None)
def list_budgets(
    month: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    engine: BudgetSyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """Lists the caller's budgets, newest month first, optionally limited to one YYYY-MM month."""
    budgets = engine.list_budgets(user_id, month)
    return {"count": len(budgets), "data": [_serialize_budget(budget) for budget in budgets]}


@app.get("/budgets/{budget_id}", response_model=None)
def get_budget(
    budget_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: BudgetSyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    return _serialize_budget(engine.get_budget(budget_id, user_id))


@app.put("/budgets/{budget_id}", response_model=None)
async def update_budget(
    budget_id: str,
    payload: BudgetUpdatePayload,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: BudgetSyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any] | JSONResponse:
    """Updates locally, then syncs the limit to the external budget created for the original category."""
    try:
        budget = await engine.update_budget(
            budget_id,
            user_id,
            amount=payload.amount,
            category=payload.category,
            month=payload.month,
            description=payload.description,
            source_ip=_client_ip(request),
        )
    except ExternalServiceError as exc:
        return error_response(
            500,
            "budget_sync_failed",
            f"Failed to update budget: {exc.message}",
            local_updated=True,
        )
    return _serialize_budget(budget)


@app.delete("/budgets/{budget_id}", response_model=None)
async def delete_budget(
    budget_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: BudgetSyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any] | JSONResponse:
    """Removes the external budget (with name fallbacks) and always the local record once that resolves."""
    try:
        report = await engine.delete_budget(budget_id, user_id, source_ip=_client_ip(request))
    except ExternalServiceError as exc:
        extra: Dict[str, Any] = {"code": exc.remote_code or "INTERNAL_ERROR"}
        suggestion = DELETE_SUGGESTIONS.get(exc.remote_code or "")
        if suggestion:
            extra["suggestion"] = suggestion
        return error_response(500, "budget_delete_failed", f"Failed to delete budget: {exc.message}", **extra)
    return {"message": "Budget deletion completed", "details": report.as_dict()}


class TransactionPayload(BaseModel):
    title: str
    amount: Decimal
    type: str
    category: Optional[str] = None
    date: Optional[datetime] = None
    description: Optional[str] = None


@app.post("/transactions", status_code=201, response_model=None)
async def create_transaction(
    payload: TransactionPayload,
    user_id: str = Depends(get_current_user_id),
    recorder: TransactionRecorder = Depends(get_transaction_recorder),
) -> Dict[str, Any]:
    """Records a transaction; expenses come back with the category budget warning, if any."""
    recorded = await recorder.record(
        user_id,
        title=payload.title,
        amount=payload.amount,
        type=payload.type,
        category=payload.category,
        date=payload.date,
        description=payload.description,
    )
    return {
        "transaction": _serialize_transaction(recorded.transaction),
        "warning": recorded.warning.as_dict() if recorded.warning else None,
    }


@app.get("/transactions", response_model=None)
def list_transactions(
    user_id: str = Depends(get_current_user_id),
    recorder: TransactionRecorder = Depends(get_transaction_recorder),
) -> List[Dict[str, Any]]:
    return [_serialize_transaction(transaction) for transaction in recorder.list(user_id)]


@app.put("/transactions/{transaction_id}", response_model=None)
def update_transaction(
    transaction_id: str,
    payload: TransactionPayload,
    user_id: str = Depends(get_current_user_id),
    recorder: TransactionRecorder = Depends(get_transaction_recorder),
) -> Dict[str, Any]:
    transaction = recorder.update(
        transaction_id,
        user_id,
        title=payload.title,
        amount=payload.amount,
        type=payload.type,
        category=payload.category or "",
        date=payload.date,
        description=payload.description,
    )
    return _serialize_transaction(transaction)


@app.delete("/transactions/{transaction_id}", response_model=None)
def delete_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user_id),
    recorder: TransactionRecorder = Depends(get_transaction_recorder),
) -> Dict[str, Any]:
    recorder.delete(transaction_id, user_id)
    return {"message": "Transaction deleted successfully"}
