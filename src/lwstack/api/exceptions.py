#!/usr/bin/env python3
"""Exception Hierarchy for the LoRaWAN Stack API and the device importer.

This module provides a structured exception hierarchy for handling errors
raised while talking to the stack's device registries and while reading
import files.

Design Principles:
    - All exceptions inherit from StackError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Registry conflicts (ID or EUI already taken) have their own type so the
      importer can tell them apart from every other failure

Exception Hierarchy:
    StackError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── AuthenticationError (unrecoverable - fix API key)
    ├── APIError
    │   ├── AlreadyExistsError (409 - ID or EUI taken)
    │   ├── NotFoundError (404)
    │   ├── ValidationError (400/422)
    │   ├── PermissionDeniedError (403)
    │   └── ServerError (5xx)
    ├── NetworkError
    │   ├── ConnectionError
    │   └── TimeoutError
    └── FormatError (import file does not parse)
"""
from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class StackError(Exception):
    """Base exception for all stack-related errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "ALREADY_EXISTS")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might go away on a later attempt
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration / Authentication
# ============================================

class ConfigurationError(StackError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


class AuthenticationError(StackError):
    """Raised when the API key is rejected (HTTP 401)."""

    def __init__(self, message: str = "API key rejected", **kwargs):
        kwargs.setdefault("code", "UNAUTHENTICATED")
        super().__init__(message, recoverable=False, **kwargs)


# ============================================
# API Errors
# ============================================

class APIError(StackError):
    """Base class for API response errors.

    Attributes:
        status_code: HTTP status code
        endpoint: API endpoint that was called
        method: HTTP method
        response_body: Raw response body (may be truncated)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        kwargs.setdefault("recoverable", status_code in (429, 500, 502, 503, 504))
        kwargs.setdefault("code", f"API_ERROR_{status_code}")

        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class AlreadyExistsError(APIError):
    """Raised when the registry reports the device ID or EUI is taken (HTTP 409)."""

    def __init__(self, message: str = "End device already exists", **kwargs):
        kwargs.setdefault("status_code", 409)
        super().__init__(
            message,
            code="ALREADY_EXISTS",
            recoverable=False,
            **kwargs,
        )


class NotFoundError(APIError):
    """Raised when requested resource is not found (HTTP 404)."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} `{resource_id}` not found"

        kwargs.setdefault("status_code", 404)
        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message,
            code="NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ValidationError(APIError):
    """Raised when the registry rejects the request body (HTTP 400/422)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 400)
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field

        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


class PermissionDeniedError(APIError):
    """Raised when the API key lacks the rights for the call (HTTP 403)."""

    def __init__(self, message: str = "Permission denied", **kwargs):
        kwargs.setdefault("status_code", 403)
        super().__init__(
            message,
            code="PERMISSION_DENIED",
            recoverable=False,
            **kwargs,
        )


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    def __init__(self, message: str = "Server error", **kwargs):
        kwargs.setdefault("status_code", 500)
        super().__init__(
            message,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


# ============================================
# Network Errors
# ============================================

class NetworkError(StackError):
    """Base class for network-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    """Raised when connection to server fails."""

    def __init__(
        self,
        message: str = "Failed to connect to server",
        host: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details=details,
            **kwargs,
        )


class TimeoutError(NetworkError):
    """Raised when request times out."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Import File Errors
# ============================================

class FormatError(StackError):
    """Raised when an import file does not parse as its declared format.

    This is fatal to the whole import run: no record of a file that fails to
    decode can be trusted.

    Attributes:
        format_id: The format the file was declared as
        line: 1-based line of the offending input, if known
        column: 1-based column of the offending input, if known
    """

    def __init__(
        self,
        message: str,
        format_id: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if format_id:
            details["format_id"] = format_id
        if line is not None:
            details["line"] = line
        if column is not None:
            details["column"] = column
        super().__init__(
            message,
            code="FORMAT_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.format_id = format_id
        self.line = line
        self.column = column


__all__ = [
    "StackError",
    "ConfigurationError",
    "AuthenticationError",
    "APIError",
    "AlreadyExistsError",
    "NotFoundError",
    "ValidationError",
    "PermissionDeniedError",
    "ServerError",
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    "FormatError",
]
