"""Error taxonomy shared by the budget engines, repositories, and HTTP layer."""

from __future__ import annotations


class FinanceError(Exception):
    """Base class for failures that map onto a client-facing error payload."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(FinanceError):
    status_code = 400
    error_code = "validation_error"


class DuplicateBudgetError(FinanceError):
    status_code = 400
    error_code = "budget_already_exists"


class NotFoundError(FinanceError):
    """A local record (budget or transaction) does not exist."""

    status_code = 404
    error_code = "not_found"


class UnauthenticatedError(FinanceError):
    status_code = 401
    error_code = "not_authenticated"


class ForbiddenError(FinanceError):
    status_code = 401
    error_code = "not_authorized"


class PersistenceError(FinanceError):
    status_code = 500
    error_code = "persistence_error"


class ExternalServiceError(FinanceError):
    """
    Any failure reported by the external budget service other than "not found".

    `indeterminate` is set when the outcome of the remote call is unknown
    (timeouts, transport errors, 5xx responses); definitive rejections such as
    403 or 400 leave it False.
    """

    status_code = 500
    error_code = "external_service_error"

    def __init__(
        self,
        message: str,
        *,
        remote_code: str | None = None,
        status: int | None = None,
        indeterminate: bool = False,
    ) -> None:
        super().__init__(message)
        self.remote_code = remote_code
        self.status = status
        self.indeterminate = indeterminate


class ExternalNotFoundError(FinanceError):
    """The external service has no resource under the requested name."""

    status_code = 404
    error_code = "external_budget_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"External budget '{name}' was not found")
        self.name = name
