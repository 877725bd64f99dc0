"""Application error taxonomy and its HTTP rendering."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger("toolsmith.errors")

VALIDATION_ERROR = "VALIDATION_ERROR"
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
UNAUTHENTICATED = "UNAUTHENTICATED"
FORBIDDEN_FIELD = "FORBIDDEN_FIELD"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
EMAIL_TAKEN = "EMAIL_TAKEN"
CONFLICT = "CONFLICT"
NO_CHANGES = "NO_CHANGES"
RATE_LIMITED = "RATE_LIMITED"
INTERNAL = "INTERNAL"

# code -> (HTTP status, default user-facing message)
ERROR_CATALOG: Dict[str, tuple[int, str]] = {
    VALIDATION_ERROR: (status.HTTP_400_BAD_REQUEST, "Nieprawidłowe dane wejściowe."),
    INVALID_CREDENTIALS: (status.HTTP_401_UNAUTHORIZED, "Nieprawidłowe dane logowania."),
    UNAUTHENTICATED: (
        status.HTTP_401_UNAUTHORIZED,
        "Musisz być zalogowany, aby wykonać tę operację.",
    ),
    FORBIDDEN_FIELD: (status.HTTP_403_FORBIDDEN, "Nie masz uprawnień do modyfikacji tego pola."),
    FORBIDDEN: (status.HTTP_403_FORBIDDEN, "Brak uprawnień do wykonania tej operacji."),
    NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Nie znaleziono zasobu."),
    EMAIL_TAKEN: (status.HTTP_409_CONFLICT, "Ten adres e-mail jest już używany."),
    CONFLICT: (status.HTTP_409_CONFLICT, "Zasób już istnieje lub jest w konflikcie."),
    NO_CHANGES: (status.HTTP_400_BAD_REQUEST, "Brak zmian do zapisania."),
    RATE_LIMITED: (
        status.HTTP_429_TOO_MANY_REQUESTS,
        "Zbyt wiele prób. Spróbuj ponownie później.",
    ),
    INTERNAL: (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Wystąpił nieoczekiwany błąd. Spróbuj ponownie.",
    ),
}


class AppError(Exception):
    """An error with a taxonomy code, an HTTP status and a safe message."""

    code = INTERNAL

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if code is not None:
            self.code = code
        default_status, default_message = ERROR_CATALOG[self.code]
        self.message = message or default_message
        self.status_code = status_code or default_status
        self.details = dict(details) if details else None
        super().__init__(self.message)

    def headers(self) -> Dict[str, str]:
        return {}

    def to_body(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ValidationFailed(AppError):
    code = VALIDATION_ERROR


class InvalidCredentialsError(AppError):
    code = INVALID_CREDENTIALS


class UnauthenticatedError(AppError):
    code = UNAUTHENTICATED


class ForbiddenFieldError(AppError):
    code = FORBIDDEN_FIELD


class ForbiddenError(AppError):
    code = FORBIDDEN


class NotFoundError(AppError):
    code = NOT_FOUND


class EmailTakenError(AppError):
    code = EMAIL_TAKEN


class ConflictError(AppError):
    code = CONFLICT


class NoChangesError(AppError):
    code = NO_CHANGES


class RateLimitedError(AppError):
    code = RATE_LIMITED

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, details={"retryAfter": retry_after})

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class InternalError(AppError):
    code = INTERNAL


def _field_name(location: Iterable[Any]) -> str:
    parts = [str(part) for part in location if part not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def validation_details(errors: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """Collapse pydantic error dicts into a ``field -> message`` mapping."""

    details: Dict[str, str] = {}
    for error in errors:
        field = _field_name(error.get("loc", ()))
        details.setdefault(field, str(error.get("msg", "")))
    return details


def validation_error(errors: Iterable[Mapping[str, Any]]) -> ValidationFailed:
    details = validation_details(errors)
    message = "; ".join(details.values()) or None
    return ValidationFailed(message, details=details)


def from_validation_error(exc: ValidationError) -> ValidationFailed:
    return validation_error(exc.errors(include_url=False))


def error_response(exc: AppError, headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    merged = dict(exc.headers())
    if headers:
        merged.update(headers)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=merged)


def register_error_handlers(app: FastAPI) -> None:
    """Render every error raised by the API in the ``{"error": {...}}`` shape."""

    @app.exception_handler(AppError)
    async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(validation_error(exc.errors()))

    @app.exception_handler(Exception)
    async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s %s", request.method, request.url.path)
        return error_response(InternalError())


__all__ = [
    "AppError",
    "ConflictError",
    "ERROR_CATALOG",
    "EmailTakenError",
    "ForbiddenError",
    "ForbiddenFieldError",
    "InternalError",
    "InvalidCredentialsError",
    "NoChangesError",
    "NotFoundError",
    "RateLimitedError",
    "UnauthenticatedError",
    "ValidationFailed",
    "error_response",
    "from_validation_error",
    "register_error_handlers",
    "validation_details",
    "validation_error",
]
