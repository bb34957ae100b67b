"""
Domain error taxonomy.

Every error carries a machine-readable code, the HTTP status the API maps it
to, and a context dict with the identifiers a caller needs to retry precisely
(trip, stop, pair). main.py renders them into the standard error envelope.
"""

from __future__ import annotations

from typing import Any


class TriplineError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(TriplineError):
    """Malformed input. No partial effect."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(TriplineError):
    code = "NOT_FOUND"
    status_code = 404


class RouteUnavailable(TriplineError):
    """The directions provider could not produce a route for a stop pair."""

    code = "ROUTE_UNAVAILABLE"
    status_code = 502


class PositionInvariantError(TriplineError):
    """Stop positions stopped being exactly 0..N-1. The transaction is rolled back."""

    code = "POSITION_INVARIANT"
    status_code = 500
