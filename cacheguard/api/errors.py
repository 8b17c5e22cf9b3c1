"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException

_DEFAULT_ERRORS = {
    400: "Bad request",
    401: "Authentication required",
    403: "Access denied",
    404: "Not found",
    413: "Request too large",
    422: "Validation error",
    429: "Too many requests",
    500: "Internal server error",
}


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
    AUTH_RATE_LIMITED = "AUTH_RATE_LIMITED"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    GUEST_ACCESS_DISABLED = "GUEST_ACCESS_DISABLED"
    GUEST_SESSION_REVOKED = "GUEST_SESSION_REVOKED"
    GUEST_SESSION_EXPIRED = "GUEST_SESSION_EXPIRED"
    GUEST_SESSION_NOT_FOUND = "GUEST_SESSION_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    PREFILL_ACCESS_DENIED = "PREFILL_ACCESS_DENIED"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        error: str = "",
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        super().__init__(
            status_code=status_code,
            detail={
                "error": error or _DEFAULT_ERRORS.get(status_code, "HTTP error"),
                "message": message,
                "code": str(error_code),
            },
        )


def error_body(
    status_code: int, error_code: ApiErrorCode, message: str, error: str = ""
) -> dict[str, str]:
    """Build the JSON error body without raising."""
    return {
        "error": error or _DEFAULT_ERRORS.get(status_code, "HTTP error"),
        "message": message,
        "code": str(error_code),
    }


def to_error_payload(detail: Any, status_code: int) -> dict[str, str]:
    """Normalize HTTP exception detail into stable error payload."""
    default_error = _DEFAULT_ERRORS.get(status_code, "HTTP error")
    if isinstance(detail, dict):
        code = str(detail.get("code") or detail.get("error_code") or f"HTTP_{status_code}")
        message = str(detail.get("message") or detail.get("detail") or default_error)
        error = str(detail.get("error") or default_error)
        return {"error": error, "message": message, "code": code}
    return {
        "error": default_error,
        "message": str(detail or default_error),
        "code": f"HTTP_{status_code}",
    }
