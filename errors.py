#!/usr/bin/env python3
"""Common error types shared across modules.

Network and parsing failures travel as ``Result`` values carrying an
``ErrorCode`` so callers can tell "no data" apart from "operation failed".
``StorageError`` is the one exception meant to escape a sync batch.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Failure categories for fetch, probe and extraction calls."""

    TIMEOUT = "timeout"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    CONNECTION_ERROR = "connection_error"
    DNS_ERROR = "dns_error"
    PARSE_ERROR = "parse_error"
    NO_CONTENT = "no_content"
    INVALID_URL = "invalid_url"
    UNSUPPORTED_TYPE = "unsupported_type"


RETRYABLE_ERRORS = frozenset({
    ErrorCode.TIMEOUT,
    ErrorCode.HTTP_5XX,
    ErrorCode.CONNECTION_ERROR,
})


def error_code_for_status(status: int) -> ErrorCode:
    """Map a non-success HTTP status onto an error code."""
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.HTTP_4XX


@dataclass
class Result(Generic[T]):
    """Outcome of a single network-bound operation."""

    ok: bool
    value: Optional[T] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    status: Optional[int] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str, status: Optional[int] = None) -> "Result[T]":
        return cls(ok=False, error_code=code, error=message, status=status)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_code in RETRYABLE_ERRORS


class StorageError(Exception):
    """Raised when the storage layer cannot complete an operation.

    Attributes:
        operation: Name of the repository operation that failed.
        details: Optional diagnostic payload.
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


__all__ = [
    "ErrorCode",
    "RETRYABLE_ERRORS",
    "Result",
    "StorageError",
    "error_code_for_status",
]
