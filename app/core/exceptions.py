from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthenticatedError(AppError):
    def __init__(self, message: str = "Not authenticated", details: dict[str, Any] | None = None):
        super().__init__(message, code="UNAUTHENTICATED", status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", details: dict[str, Any] | None = None):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND, details=details)


class InvalidRequestError(AppError):
    def __init__(self, message: str = "Invalid request", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class RefillLimitReachedError(AppError):
    def __init__(self, message: str = "Monthly refill limit reached", details: dict[str, Any] | None = None):
        super().__init__(message, code="REFILL_LIMIT_REACHED", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientCreditsError(AppError):
    def __init__(self, message: str = "Insufficient credits", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )


class ProviderError(AppError):
    """Billing provider or storage call failed; the caller may retry."""

    def __init__(self, message: str = "Billing provider error", retryable: bool = True, details: dict[str, Any] | None = None):
        details = dict(details or {})
        details["retryable"] = retryable
        super().__init__(message, code="PROVIDER_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)

    @property
    def retryable(self) -> bool:
        return bool(self.details.get("retryable"))


ERROR_CLASSES: dict[str, type[AppError]] = {
    "UNAUTHENTICATED": UnauthenticatedError,
    "NOT_FOUND": NotFoundError,
    "INVALID_REQUEST": InvalidRequestError,
    "REFILL_LIMIT_REACHED": RefillLimitReachedError,
    "INSUFFICIENT_CREDITS": InsufficientCreditsError,
    "PROVIDER_ERROR": ProviderError,
}


def error_from_payload(status_code: int, payload: Any) -> AppError:
    """Rebuild the typed error from a JSON error envelope returned by the API."""
    if not isinstance(payload, dict):
        return AppError("Unexpected response", status_code=status_code)
    message = payload.get("error") or "Request failed"
    if not isinstance(message, str):
        message = str(message)
    details = payload.get("details") or {}
    cls = ERROR_CLASSES.get(payload.get("code") or "")
    if cls is ProviderError:
        return ProviderError(message, retryable=bool(details.get("retryable", True)), details=details)
    if cls is not None:
        return cls(message, details=details)
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return UnauthenticatedError(message, details=details)
    return AppError(message, code=payload.get("code") or "ERROR", status_code=status_code, details=details)


def _body(request: Request, message: str, code: str, details: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message, "code": code, "details": details}
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(status_code=exc.status_code, content=_body(request, exc.message, exc.code, exc.details))


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        message=exc.message,
    )
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_body(request, "Validation error", "VALIDATION_ERROR", {"errors": jsonable_encoder(exc.errors())}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_body(request, "Internal server error", "INTERNAL_ERROR", {}),
    )
