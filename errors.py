"""Error types raised by the waiting list services.

Each error carries the HTTP status it maps to so the API layer can render the
``{"success": false, "error": ...}`` envelope without a lookup table.
"""

from __future__ import annotations


class QueueError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    """Missing or malformed input.  Fixable by the caller, never retried."""

    status_code = 400


class InvalidTransitionError(QueueError):
    """The requested status change is not allowed from the current status."""

    status_code = 409


class InvalidStateError(QueueError):
    """Mutation attempted on an entry that has already reached a terminal status."""

    status_code = 409


class NotFoundError(QueueError):
    """Unknown id, or an id belonging to another clinic (reported the same way)."""

    status_code = 404


class TransientIOError(QueueError):
    """Database or network timeout.  Reads may be retried on the next poll."""

    status_code = 503
