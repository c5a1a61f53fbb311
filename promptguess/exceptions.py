"""Domain exceptions and their HTTP rendering."""

from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class PromptGuessError(Exception):
    """Base exception for game errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, error_type: str = "internal_error"):
        self.message = message
        self.error_type = error_type
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_type, "message": self.message}}


class ValidationFailedError(PromptGuessError):
    """Malformed input, rejected before any state is touched."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, "validation_error")
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["error"]["field"] = self.field
        return body


class NotFoundError(PromptGuessError):
    """Unknown instance, or one the requester has no right to see."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, kind: str, instance_id: Any):
        super().__init__(f"{kind.capitalize()} not found", "not_found")
        self.kind = kind
        self.instance_id = instance_id


class ConflictError(PromptGuessError):
    """Duplicate action. Carries the current state so clients can reconcile."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(
        self,
        message: str,
        error_type: str = "conflict",
        current_state: dict[str, Any] | None = None,
        prior_result: dict[str, Any] | None = None,
    ):
        super().__init__(message, error_type)
        self.current_state = current_state
        self.prior_result = prior_result

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.current_state is not None:
            body["state"] = self.current_state
        if self.prior_result is not None:
            body["result"] = self.prior_result
        return body


class AlreadyGuessedError(ConflictError):
    """A guess was already accepted for this (instance, user) pair."""

    def __init__(
        self,
        prior_result: dict[str, Any] | None = None,
        current_state: dict[str, Any] | None = None,
    ):
        super().__init__(
            "You have already guessed on this instance",
            "already_guessed",
            current_state=current_state,
            prior_result=prior_result,
        )


class InvalidStateError(PromptGuessError):
    """Operation is not valid for the instance's current status."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message, "invalid_state")
        self.current_status = current_status

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.current_status is not None:
            body["error"]["status"] = self.current_status
        return body


class UpstreamError(PromptGuessError):
    """Scoring gateway failed or timed out. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Scoring service unavailable, please retry"):
        super().__init__(message, "upstream_error")


async def promptguess_error_handler(request: Request, exc: PromptGuessError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render pydantic body/query validation failures in the common envelope."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    field = None
    if errors and errors[0].get("loc"):
        field = ".".join(str(part) for part in errors[0]["loc"] if part != "body")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ValidationFailedError(message, field=field or None).to_dict(),
    )
