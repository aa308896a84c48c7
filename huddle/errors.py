"""
huddle.errors — Service-level error type
=========================================

Services raise :class:`ServiceError` for every expected failure
(validation, ownership, missing rows, provider errors).  The API layer
turns it into the ``{success: false, message}`` envelope with the carried
status code; services never build HTTP responses themselves.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """An expected, client-facing failure with an HTTP status."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    def __repr__(self) -> str:
        return f"<ServiceError {self.status_code} {self.message!r}>"


def create_error(
    message: str,
    status_code: int = 500,
    details: dict[str, Any] | None = None,
) -> ServiceError:
    """Build a :class:`ServiceError`; callers ``raise create_error(...)``."""
    return ServiceError(message, status_code, details)


def not_found(what: str) -> ServiceError:
    return ServiceError(f"{what} not found", 404)


def forbidden(message: str = "You do not have permission to perform this action") -> ServiceError:
    return ServiceError(message, 403)
