"""
Error taxonomy shared by the services and surfaced as GraphQL field errors.
"""

from __future__ import annotations

from typing import Optional


class RidebookError(Exception):
    """Base class for errors that carry a machine-readable code."""

    code = "INTERNAL"


class InvalidInputError(RidebookError):
    code = "INVALID_INPUT"


class NotFoundError(RidebookError):
    code = "NOT_FOUND"


class ConflictError(RidebookError):
    code = "CONFLICT"


class ForbiddenError(ConflictError):
    code = "FORBIDDEN"


class ExternalServiceError(RidebookError, IOError):
    """Non-2xx answer from the spreadsheet, identity provider or hook."""

    code = "UPSTREAM_IO"

    def __init__(self, service: str, status: Optional[int], message: str):
        self.service = service
        self.status = status
        self.message = message
        super().__init__(f"{service} HTTP {status}: {message}")


class UnauthenticatedError(RidebookError):
    """Bearer token missing its signature, issuer, audience or lifetime checks."""

    code = "UNAUTHENTICATED"
