from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from main import app
from middleware.rate_limit import SimpleRateLimiter
from persistence.database import get_session
from shared.settings import BudgetServiceSettings

from errors import ExternalServiceError
from fakes import RecordingBudgetService

ALICE = {"x-user-id": "alice"}
BOB = {"x-user-id": "bob"}


@pytest.fixture
def client(db_session, budget_service: RecordingBudgetService) -> Iterator[TestClient]:
    original_state = (app.state.rate_limiter, app.state.budget_service, app.state.settings)
    app.state.rate_limiter = SimpleRateLimiter(max_requests=1000, window_seconds=60, burst=0)
    app.state.budget_service = budget_service
    app.state.settings = BudgetServiceSettings(provider_name="memory", timeout_seconds=1.0, max_attempts=1)
    app.dependency_overrides[get_session] = lambda: db_session
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        app.state.rate_limiter, app.state.budget_service, app.state.settings = original_state


def _create_budget(client: TestClient, category: str = "Food", amount: float = 100, headers=ALICE) -> dict:
    response = client.post("/budgets", json={"category": category, "amount": amount}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_health_reports_budget_service(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "finance-api", "budget_service": "memory"}
    assert response.headers["x-request-id"]


def test_requests_without_identity_are_rejected(client: TestClient) -> None:
    response = client.get("/budgets")

    assert response.status_code == 401
    assert response.json()["error"] == "not_authenticated"


def test_budget_lifecycle(client: TestClient, budget_service: RecordingBudgetService) -> None:
    created = _create_budget(client, amount=250.5)
    assert created["category"] == "Food"
    assert created["amount"] == 250.5
    assert created["external_resource_id"] == "user-alice-Food"
    assert "user-alice-Food" in budget_service.budgets

    listing = client.get("/budgets", params={"month": created["month"][:7]}, headers=ALICE).json()
    assert listing["count"] == 1
    assert listing["data"][0]["id"] == created["id"]

    updated = client.put(
        f"/budgets/{created['id']}",
        json={"category": "Groceries", "amount": 300},
        headers=ALICE,
    )
    assert updated.status_code == 200
    assert updated.json()["category"] == "Groceries"

    deleted = client.delete(f"/budgets/{created['id']}", headers=ALICE)
    assert deleted.status_code == 200
    body = deleted.json()
    assert body["message"] == "Budget deletion completed"
    assert body["details"]["db_deleted"] is True
    assert body["details"]["external_deleted"] is True
    assert body["details"]["final_state"] == "fully_synchronized"
    assert budget_service.budgets == {}

    assert client.get(f"/budgets/{created['id']}", headers=ALICE).status_code == 404


def test_duplicate_budget_returns_400(client: TestClient) -> None:
    _create_budget(client)

    response = client.post("/budgets", json={"category": "Food", "amount": 50}, headers=ALICE)

    assert response.status_code == 400
    assert response.json()["error"] == "budget_already_exists"


@pytest.mark.parametrize(
    "payload",
    [{"category": "Food"}, {"category": "Food", "amount": "lots"}, {"category": "Food", "amount": -3}],
)
def test_invalid_budget_payload_returns_400(client: TestClient, payload: dict) -> None:
    response = client.post("/budgets", json=payload, headers=ALICE)

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_other_users_budget_is_not_authorized(client: TestClient) -> None:
    created = _create_budget(client)

    for response in (
        client.get(f"/budgets/{created['id']}", headers=BOB),
        client.put(f"/budgets/{created['id']}", json={"category": "Food", "amount": 1}, headers=BOB),
        client.delete(f"/budgets/{created['id']}", headers=BOB),
    ):
        assert response.status_code == 401
        assert response.json()["error"] == "not_authorized"


def test_external_failure_on_create_returns_sync_error(
    client: TestClient, budget_service: RecordingBudgetService
) -> None:
    budget_service.fail_next("create", ExternalServiceError("quota exceeded", status=400))

    response = client.post("/budgets", json={"category": "Food", "amount": 50}, headers=ALICE)

    assert response.status_code == 500
    assert response.json() == {"error": "budget_sync_failed", "details": "Failed to create budget: quota exceeded"}
    assert client.get("/budgets", headers=ALICE).json()["count"] == 0


def test_external_failure_on_update_keeps_local_change(
    client: TestClient, budget_service: RecordingBudgetService
) -> None:
    created = _create_budget(client)
    budget_service.fail_next("update", ExternalServiceError("unavailable", status=503, indeterminate=True))

    response = client.put(f"/budgets/{created['id']}", json={"category": "Food", "amount": 80}, headers=ALICE)

    assert response.status_code == 500
    assert response.json()["local_updated"] is True
    assert client.get(f"/budgets/{created['id']}", headers=ALICE).json()["amount"] == 80.0


def test_definitive_delete_rejection_includes_suggestion(
    client: TestClient, budget_service: RecordingBudgetService
) -> None:
    created = _create_budget(client)
    budget_service.fail_next(
        "delete",
        ExternalServiceError("denied", remote_code="AccessDeniedException", status=403),
    )

    response = client.delete(f"/budgets/{created['id']}", headers=ALICE)

    assert response.status_code == 500
    payload = response.json()
    assert payload["error"] == "budget_delete_failed"
    assert payload["code"] == "AccessDeniedException"
    assert "credentials" in payload["suggestion"]
    assert client.get(f"/budgets/{created['id']}", headers=ALICE).status_code == 200


def test_indeterminate_delete_still_removes_local_budget(
    client: TestClient, budget_service: RecordingBudgetService
) -> None:
    created = _create_budget(client)
    budget_service.fail_next("delete", ExternalServiceError("gateway timeout", status=504, indeterminate=True))

    response = client.delete(f"/budgets/{created['id']}", headers=ALICE)

    assert response.status_code == 200
    details = response.json()["details"]
    assert details["external_deleted"] is False
    assert details["final_state"] == "external_may_still_exist"
    assert client.get(f"/budgets/{created['id']}", headers=ALICE).status_code == 404


def test_expense_returns_budget_warning(client: TestClient) -> None:
    _create_budget(client, amount=100)

    first = client.post(
        "/transactions",
        json={"title": "Market", "amount": 50, "type": "expense", "category": "Food"},
        headers=ALICE,
    )
    second = client.post(
        "/transactions",
        json={"title": "Dinner", "amount": 55, "type": "expense", "category": "Food"},
        headers=ALICE,
    )

    assert first.status_code == 201
    assert first.json()["warning"] is None
    warning = second.json()["warning"]
    assert warning["level"] == "critical"
    assert warning["percentage"] == 105.0
    assert warning["message"] == "Budget exceeded by 5.00%"
    assert warning["new_transaction_amount"] == 55.0


def test_transaction_crud(client: TestClient) -> None:
    created = client.post(
        "/transactions",
        json={"title": "Salary", "amount": 3000, "type": "income", "date": "2026-03-01T09:00:00Z"},
        headers=ALICE,
    ).json()["transaction"]
    assert created["category"] == "Uncategorized"

    updated = client.put(
        f"/transactions/{created['id']}",
        json={
            "title": "Salary March",
            "amount": 3100,
            "type": "income",
            "category": "Work",
            "description": "includes bonus",
        },
        headers=ALICE,
    )
    assert updated.status_code == 200
    assert updated.json()["amount"] == 3100.0
    assert updated.json()["description"] == "includes bonus"

    assert [item["title"] for item in client.get("/transactions", headers=ALICE).json()] == ["Salary March"]
    assert client.get("/transactions", headers=BOB).json() == []
    assert client.delete(f"/transactions/{created['id']}", headers=BOB).status_code == 401
    assert client.delete(f"/transactions/{created['id']}", headers=ALICE).status_code == 200
    assert client.delete(f"/transactions/{created['id']}", headers=ALICE).status_code == 404


def test_rate_limit_returns_429_after_threshold(client: TestClient) -> None:
    app.state.rate_limiter = SimpleRateLimiter(max_requests=2, window_seconds=60, burst=0)

    assert client.get("/health", headers=ALICE).status_code == 200
    assert client.get("/health", headers=ALICE).status_code == 200
    blocked = client.get("/health", headers=ALICE)

    assert blocked.status_code == 429
    assert blocked.json()["error"] == "rate_limit_exceeded"
    assert "Retry-After" in blocked.headers
    # Limits are per caller.
    assert client.get("/health", headers=BOB).status_code == 200


def test_database_read_failures_return_json_error(
    client: TestClient, db_session, budget_service: RecordingBudgetService, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "scalars", broken_query)
    monkeypatch.setattr(db_session, "get", broken_query)

    for response in (
        client.get("/budgets", headers=ALICE),
        client.post("/budgets", json={"category": "Food", "amount": 50}, headers=ALICE),
        client.get("/budgets/some-id", headers=ALICE),
        client.delete("/budgets/some-id", headers=ALICE),
        client.get("/transactions", headers=ALICE),
    ):
        assert response.status_code == 500
        assert response.headers["content-type"].startswith("application/json")
        assert response.json()["error"] == "persistence_error"
        assert "database is locked" in response.json()["details"]

    assert budget_service.calls == []
