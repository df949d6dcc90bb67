"""Error taxonomy shared by the services and the HTTP layer.

Every failure that reaches a client is one of the classes below.  Each class
carries the HTTP status it maps to so :mod:`medportal.main` can render a
uniform ``{"error": message}`` body without inspecting the exception type.
"""

from __future__ import annotations


class ApiError(Exception):
    """Base class for errors that are safe to surface to API clients."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request"


class UnauthorizedError(ApiError):
    status_code = 401
    default_message = "Invalid or expired token"


class ForbiddenError(ApiError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ApiError):
    status_code = 409
    default_message = "Conflict"


class ConstraintViolationError(ConflictError):
    """Raised by the persistence gateway when a storage constraint rejects a write."""

    default_message = "Constraint violated"


class BackendUnavailableError(ApiError):
    """The relational backend could not be reached or timed out."""

    status_code = 503
    default_message = "Database unreachable"


class InternalError(ApiError):
    status_code = 500


__all__ = [
    "ApiError",
    "ValidationError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ConstraintViolationError",
    "BackendUnavailableError",
    "InternalError",
]
