"""Billing error taxonomy and API response helpers."""

from typing import Any, Dict

from fastapi import HTTPException, status


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, code: str, http_status: int = 400):
        """Initialize error."""
        self.message = message
        self.code = code
        self.http_status = http_status
        super().__init__(message)


class NotFoundError(AppError):
    """Referenced cycle, room, member or charge does not exist."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, "not_found", status.HTTP_404_NOT_FOUND)


class ValidationError(AppError):
    """Input rejected before any mutation happened."""

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, "validation_error", status.HTTP_400_BAD_REQUEST)


class CycleStateError(AppError):
    """Operation not permitted in the cycle's current status."""

    def __init__(self, message: str = "Operation not allowed for this billing cycle"):
        super().__init__(message, "invalid_cycle_state", status.HTTP_409_CONFLICT)


class ConcurrentModificationError(AppError):
    """Another writer updated the billing cycle first."""

    def __init__(self, message: str = "Billing cycle was modified concurrently, retry"):
        super().__init__(message, "concurrent_modification", status.HTTP_409_CONFLICT)


def error_response(error: AppError) -> Dict[str, Any]:
    """Create a standardized error response."""
    return {
        "error": {
            "code": error.code,
            "message": error.message,
        }
    }


def raise_app_error(error: AppError) -> None:
    """Raise an HTTPException from an AppError."""
    raise HTTPException(
        status_code=error.http_status,
        detail=error_response(error),
    )


__all__ = [
    "AppError",
    "NotFoundError",
    "ValidationError",
    "CycleStateError",
    "ConcurrentModificationError",
    "error_response",
    "raise_app_error",
]
