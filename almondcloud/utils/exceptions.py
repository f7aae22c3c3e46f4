"""
Exception hierarchy and error handling utilities for almondcloud.

Provides:
- Custom exception classes with stable error codes
- Error categorization (recoverable, retryable, fatal)
- Safe error message formatting (no sensitive data leak)
"""

from __future__ import annotations

import asyncio
import json
import re
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    UNAVAILABLE = "unavailable"
    FATAL = "fatal"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"


class AlmondError(Exception):
    """Base exception for all almondcloud errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# Stable code callers can special-case without matching messages.
BACKEND_UNAVAILABLE = "ENXIO"


class BackendUnavailableError(AlmondError):
    """The control channel to the engine process is not established."""

    def __init__(self, message: str = "Backend died", method: str | None = None):
        details = {"method": method} if method else {}
        super().__init__(message, code=BACKEND_UNAVAILABLE, category=ErrorCategory.UNAVAILABLE, details=details)


class ChannelClosedError(AlmondError):
    """The RPC channel closed before a reply arrived."""

    def __init__(self, message: str = "channel closed"):
        super().__init__(message, code="CHANNEL_CLOSED", category=ErrorCategory.RETRYABLE)


class ProtocolError(AlmondError):
    """Malformed frame or unexpected message on the control channel."""

    def __init__(self, message: str, code: str = "PROTOCOL_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, category=ErrorCategory.PROTOCOL, details=details)


class ObjectNotFoundError(AlmondError):
    """The referenced remote object was released or never existed."""

    def __init__(self, obj_id: str):
        super().__init__(
            f"object not found: {obj_id}",
            code="OBJECT_NOT_FOUND",
            category=ErrorCategory.NOT_FOUND,
            details={"obj": obj_id},
        )


class MethodNotFoundError(AlmondError):
    """The remote object does not expose the requested method."""

    def __init__(self, obj_id: str, method: str):
        super().__init__(
            f"method {method} not found on object {obj_id}",
            code="METHOD_NOT_FOUND",
            category=ErrorCategory.NOT_FOUND,
            details={"obj": obj_id, "method": method},
        )


class RemoteInvocationError(AlmondError):
    """The remote method itself failed; carries the peer's code and message verbatim."""

    def __init__(self, code: str, message: str, data: dict[str, Any] | None = None):
        super().__init__(message, code=code, category=ErrorCategory.RECOVERABLE, details=data or {})


class RpcTimeoutError(AlmondError):
    """A remote call exceeded its configured timeout."""

    def __init__(self, method: str, timeout_seconds: float):
        super().__init__(
            f"Remote call '{method}' timed out after {timeout_seconds}s",
            code="TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            details={"method": method, "timeout_seconds": timeout_seconds},
        )


class InvalidCommandError(AlmondError):
    """A browser frame carried an unknown command type."""

    def __init__(self, command_type: Any):
        super().__init__(
            f"Invalid command type {command_type}",
            code="INVALID_COMMAND",
            category=ErrorCategory.VALIDATION,
            details={"type": command_type},
        )


class AuthenticationError(AlmondError):
    """Missing or unknown credentials."""

    def __init__(self, message: str = "Invalid or missing API token"):
        super().__init__(message, code="UNAUTHORIZED", category=ErrorCategory.PERMISSION)


class PermissionDeniedError(AlmondError):
    """Authenticated, but the scope or capability is missing."""

    def __init__(self, message: str, resource: str | None = None):
        details = {"resource": resource} if resource else {}
        super().__init__(message, code="PERMISSION_DENIED", category=ErrorCategory.PERMISSION, details=details)


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"[a-zA-Z0-9]{32,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove sensitive information from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def classify_exception(exc: Exception) -> tuple[str, ErrorCategory, bool]:
    """
    Classify an exception and return (error_code, category, should_retry).
    """
    if isinstance(exc, AlmondError):
        return exc.code, exc.category, exc.category in (ErrorCategory.RETRYABLE, ErrorCategory.UNAVAILABLE)

    if isinstance(exc, asyncio.TimeoutError):
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if isinstance(exc, ConnectionError):
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    if isinstance(exc, json.JSONDecodeError):
        return "JSON_PARSE_ERROR", ErrorCategory.VALIDATION, False

    if isinstance(exc, ValueError):
        return "INVALID_VALUE", ErrorCategory.VALIDATION, False

    if isinstance(exc, KeyError):
        return "MISSING_KEY", ErrorCategory.VALIDATION, False

    if isinstance(exc, TypeError):
        return "TYPE_ERROR", ErrorCategory.VALIDATION, False

    return "INTERNAL_ERROR", ErrorCategory.FATAL, False


def classify_http_status(exc: Exception) -> int:
    """Map exception to appropriate HTTP status code."""
    if isinstance(exc, AlmondError):
        category_to_status = {
            ErrorCategory.VALIDATION: 400,
            ErrorCategory.NOT_FOUND: 404,
            ErrorCategory.PERMISSION: 403,
            ErrorCategory.TIMEOUT: 504,
            ErrorCategory.UNAVAILABLE: 503,
            ErrorCategory.RETRYABLE: 503,
            ErrorCategory.PROTOCOL: 502,
            ErrorCategory.RECOVERABLE: 500,
            ErrorCategory.FATAL: 500,
        }
        if exc.code == "UNAUTHORIZED":
            return 401
        return category_to_status.get(exc.category, 500)
    return 500
