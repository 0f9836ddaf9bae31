"""
Exception hierarchy and error helpers for peerbind.

Provides:
- Coded exception classes with error categories
- RelayedError, the caller-visible failure raised inside exposed methods
- Safe error message formatting (no sensitive data leak across the channel)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    FAULT = "fault"
    TIMEOUT = "timeout"
    CHANNEL = "channel"
    VALIDATION = "validation"


class PeerBindError(Exception):
    """Base exception for all peerbind errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FAULT,
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


class BindingTimeoutError(PeerBindError):
    """No registration for the requested class arrived before the binding timeout."""

    def __init__(self, class_name: str, endpoint_id: str, timeout_ms: int):
        super().__init__(
            f"Timed out after {timeout_ms}ms binding to API '{class_name}' on endpoint '{endpoint_id}'",
            code="TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            details={"class_name": class_name, "endpoint_id": endpoint_id, "timeout_ms": timeout_ms},
        )
        self.class_name = class_name
        self.endpoint_id = endpoint_id
        self.timeout_ms = timeout_ms


class ChannelError(PeerBindError):
    """Channel communication error."""

    def __init__(self, channel: str, message: str, code: str = "CHANNEL_ERROR", details: dict[str, Any] | None = None):
        super().__init__(
            f"Channel '{channel}' error: {message}",
            code=code,
            category=ErrorCategory.CHANNEL,
            details={"channel": channel, **(details or {})},
        )
        self.channel = channel


class ChannelCallError(ChannelError):
    """A request/response call failed on the far side of the channel.

    Raised for host-side faults: the remote handler raised something other
    than a RelayedError, or no handler was installed for the channel name.
    """

    def __init__(self, channel: str, code: str, message: str, data: dict[str, Any] | None = None):
        super().__init__(channel, message, code=code, details=data)
        self.remote_message = message
        self.data = data


class ChannelClosedError(ChannelError):
    """The channel closed before or while a call was in flight."""

    def __init__(self, endpoint_id: str):
        super().__init__(endpoint_id, "channel closed", code="CHANNEL_CLOSED")
        self.endpoint_id = endpoint_id


class ProtocolError(PeerBindError):
    """Malformed frame received from the channel."""

    def __init__(self, message: str):
        super().__init__(message, code="PROTOCOL_ERROR", category=ErrorCategory.CHANNEL)


class ApiDefinitionError(PeerBindError):
    """An API class has public attributes that are not methods."""

    def __init__(self, class_name: str, attribute_names: list[str]):
        super().__init__(
            f"API class '{class_name}' has public non-method attributes: {', '.join(attribute_names)}",
            code="INVALID_API",
            category=ErrorCategory.VALIDATION,
            details={"class_name": class_name, "attribute_names": attribute_names},
        )
        self.class_name = class_name
        self.attribute_names = attribute_names


class RelayedError(Exception):
    """
    Raise inside an exposed method to fail the remote call with ``payload``.

    The payload is restorable-encoded and crosses the channel as a normal
    reply, so the binder raises it again instead of seeing a host-side fault.
    On the binding side the payload is found on ``.payload`` unchanged.
    """

    def __init__(self, payload: Any):
        super().__init__(payload)
        self.payload = payload

    def __str__(self) -> str:
        return str(self.payload)


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"[a-zA-Z0-9]{32,}"),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove sensitive information from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def describe_fault(exc: BaseException, sanitize: bool = True) -> str:
    """Generic one-line description of a host-side fault, safe to send to a peer."""
    text = str(exc)
    if sanitize:
        text = sanitize_error_message(text)
    name = type(exc).__name__
    return f"{name}: {text}" if text else name
