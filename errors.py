"""
Error taxonomy for swap operations.

Every error carries the HTTP status it maps to and a ``detail`` dict with a
human readable ``message`` plus whatever context lets the caller act on it
(current status, offending field, book id, ...).
"""

from typing import Any, Dict


class SwapError(Exception):
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def detail(self) -> Dict[str, Any]:
        detail = {"message": self.message}
        for key, value in self.context.items():
            detail[key] = value.value if hasattr(value, "value") else value
        return detail


class AuthorizationError(SwapError):
    """The caller may not perform this action on this swap."""

    status_code = 403


class StateConflictError(SwapError):
    """The transition is not valid from the current status, or a duplicate
    active swap already exists."""

    status_code = 409


class ValidationError(SwapError):
    """Missing or invalid input, or a referenced book that cannot be used."""

    status_code = 422


class NotFoundError(SwapError):
    status_code = 404
