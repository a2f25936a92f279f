"""Application exception types."""

from typing import Any

from app.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


def resource_not_found() -> ApiError:
    return ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


def invalid_input(message: str, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(status_code=422, code="INVALID_INPUT", message=message, details=details)


def store_unavailable() -> ApiError:
    return ApiError(status_code=503, code="STORE_UNAVAILABLE", message="Job store is temporarily unavailable")


__all__ = ["ApiError", "invalid_input", "resource_not_found", "store_unavailable"]
