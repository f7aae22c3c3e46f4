"""Utility functions for almondcloud."""

from almondcloud.utils.exceptions import (
    BACKEND_UNAVAILABLE,
    AlmondError,
    AuthenticationError,
    BackendUnavailableError,
    ChannelClosedError,
    ErrorCategory,
    InvalidCommandError,
    MethodNotFoundError,
    ObjectNotFoundError,
    PermissionDeniedError,
    ProtocolError,
    RemoteInvocationError,
    RpcTimeoutError,
    classify_exception,
    classify_http_status,
    sanitize_error_message,
)

__all__ = [
    "BACKEND_UNAVAILABLE",
    "AlmondError",
    "AuthenticationError",
    "BackendUnavailableError",
    "ChannelClosedError",
    "ErrorCategory",
    "InvalidCommandError",
    "MethodNotFoundError",
    "ObjectNotFoundError",
    "PermissionDeniedError",
    "ProtocolError",
    "RemoteInvocationError",
    "RpcTimeoutError",
    "classify_exception",
    "classify_http_status",
    "sanitize_error_message",
]
