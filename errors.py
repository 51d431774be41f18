"""Exceptions raised by the Glue Lock cloud monitor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    """HTTP response attached to a failed request."""

    status: int
    body: Any = None


class GlueApiError(Exception):
    """A request to the Glue cloud API failed.

    Carries the message, an optional machine-readable code and the
    HTTP response when one was received.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        response: ErrorResponse | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.response = response

    @property
    def status(self) -> int | None:
        return self.response.status if self.response else None

    @property
    def is_retryable(self) -> bool:
        """No response at all, or a 5xx response."""
        if self.response is None:
            return True
        return 500 <= self.response.status < 600


class TransientNetworkError(GlueApiError):
    """No response was received (connection failure or timeout)."""


class ServerError(GlueApiError):
    """The API answered with a 5xx status."""


class ClientError(GlueApiError):
    """The API rejected the request (4xx or other non-retryable status)."""

    @property
    def is_retryable(self) -> bool:
        return False


def error_from_response(status: int, body: Any, message: str | None = None) -> GlueApiError:
    """Build the matching error type for an HTTP error status."""
    message = message or f"Request failed with status code {status}"
    response = ErrorResponse(status, body)
    if 500 <= status < 600:
        return ServerError(message, code=f"HTTP_{status}", response=response)
    return ClientError(message, code=f"HTTP_{status}", response=response)


class ReconciliationError(Exception):
    """A polling pass could not fetch the lock status."""

    def __init__(self, lock_id: str, cause: Exception):
        super().__init__(f"Reconciliation of lock {lock_id} failed: {cause}")
        self.lock_id = lock_id
        self.cause = cause


class OperationError(Exception):
    """A user-initiated lock or unlock did not take effect."""

    def __init__(self, lock_id: str, operation: str, cause: Exception):
        super().__init__(f"Operation {operation} on lock {lock_id} failed: {cause}")
        self.lock_id = lock_id
        self.operation = operation
        self.cause = cause
