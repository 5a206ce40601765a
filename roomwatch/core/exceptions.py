"""Error hierarchy shared by the engine and the HTTP layer."""

from __future__ import annotations


class AppError(Exception):
    """Base class for all application exceptions."""

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Raised when a mutation is rejected before any state changes."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=422, details=details)


class NotFoundError(AppError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with id {resource_id} not found",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class InvalidStateError(AppError):
    """Raised when a conflict is not in a state that allows the transition."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=409, details=details)


class PersistenceError(AppError):
    """Raised when the persistence adapter could not make a change durable."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=503, details=details)
