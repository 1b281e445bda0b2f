"""Exception hierarchy and error classification for the exchange engine.

Specific exceptions for each failure mode. Raw engine exceptions are
never surfaced as-is: they are classified into an ``ErrorCategory`` and
carried across the boundary as a ``NormalizedError``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    AUTH_FAILED = "auth_failed"
    INVALID_TOKEN = "invalid_token"
    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    OVERLOADED = "overloaded"
    USAGE_POLICY = "usage_policy"
    SESSION_EXPIRED = "session_expired"
    PROCESS_CRASH = "process_crash"
    EXECUTABLE_NOT_FOUND = "executable_not_found"
    NETWORK = "network"
    SDK_ERROR = "sdk_error"
    CONFIGURATION = "configuration"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"


@dataclass
class NormalizedError:
    """Error shape that crosses the orchestrator boundary."""
    category: ErrorCategory
    message: str
    debug_context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_auth(self) -> bool:
        return self.category == ErrorCategory.AUTH_FAILED

    @property
    def is_retryable(self) -> bool:
        return self.category == ErrorCategory.USAGE_POLICY


class ForklineError(Exception):
    """Base exception for all exchange errors."""


class ConfigurationError(ForklineError):
    """No reachable engine or credential for this exchange."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

    def normalize(self) -> NormalizedError:
        return NormalizedError(ErrorCategory.CONFIGURATION, self.reason)


class EngineProtocolError(ForklineError):
    """The engine reported an error inside its event stream."""
    def __init__(self, error: NormalizedError):
        self.error = error
        super().__init__(f"{error.category.value}: {error.message}")


class TransportError(ForklineError):
    """The engine process or network failed mid-stream."""
    def __init__(self, error: NormalizedError, cause: BaseException | None = None):
        self.error = error
        self.cause = cause
        super().__init__(f"{error.category.value}: {error.message}")


class ApprovalTimeoutError(ForklineError):
    """A tool approval was not answered within its bounded wait."""
    def __init__(self, call_id: str, timeout_seconds: float):
        self.call_id = call_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tool approval {call_id} timed out after {timeout_seconds}s"
        )


SESSION_NOT_FOUND_MARKER = "No conversation found with session ID"


def classify_engine_error(event: dict[str, Any]) -> NormalizedError:
    """Classify an error embedded in an engine event payload."""
    message = event.get("message")
    message_text = None
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict):
                message_text = first.get("text")
    raw_code = event.get("error") if isinstance(event.get("error"), str) else ""
    error_text = str(
        message_text
        or event.get("error")
        or (message if isinstance(message, str) else "")
        or "Unknown SDK error"
    )
    debug = {
        "raw_error_code": raw_code,
        "session_id": event.get("session_id"),
    }

    category = ErrorCategory.SDK_ERROR
    context = error_text
    if raw_code == "authentication_failed" or "authentication" in error_text:
        category = ErrorCategory.AUTH_FAILED
        context = "Authentication failed - not logged into the engine CLI"
    elif "invalid_token" in error_text or "Invalid access token" in error_text:
        category = ErrorCategory.INVALID_TOKEN
        context = "Invalid access token. Update MCP settings"
    elif raw_code == "invalid_api_key" or "api_key" in error_text:
        category = ErrorCategory.INVALID_API_KEY
        context = "Invalid API key"
    elif raw_code in ("rate_limit_exceeded", "rate_limit") or "rate" in error_text:
        category = ErrorCategory.RATE_LIMIT
        context = "Session limit reached"
    elif raw_code == "overloaded" or "overload" in error_text:
        category = ErrorCategory.OVERLOADED
        context = "Engine is overloaded, try again later"
    elif (
        raw_code == "invalid_request"
        or "Usage Policy" in error_text
        or "violate" in error_text
    ):
        category = ErrorCategory.USAGE_POLICY
    return NormalizedError(category, context, debug)


def classify_transport_error(
    exc: BaseException,
    stderr: str = "",
) -> NormalizedError:
    """Classify a mid-stream exception using its message and captured stderr."""
    text = str(exc)
    category = ErrorCategory.UNKNOWN
    context = "Engine streaming error"

    if SESSION_NOT_FOUND_MARKER in stderr or SESSION_NOT_FOUND_MARKER in text:
        category = ErrorCategory.SESSION_EXPIRED
        context = "Previous session expired. Please try again."
    elif "exited with code" in text:
        category = ErrorCategory.PROCESS_CRASH
        context = "Engine process crashed"
    elif "ENOENT" in text or isinstance(exc, FileNotFoundError):
        category = ErrorCategory.EXECUTABLE_NOT_FOUND
        context = "Required executable not found in PATH"
    elif "authentication" in text or "401" in text:
        category = ErrorCategory.AUTH_FAILED
        context = "Authentication failed - check your API key"
    elif (
        "invalid_api_key" in text
        or "Invalid API Key" in text
        or "invalid_api_key" in stderr
    ):
        category = ErrorCategory.INVALID_API_KEY
        context = "Invalid API key"
    elif "rate_limit" in text or "429" in text:
        category = ErrorCategory.RATE_LIMIT
        context = "Session limit reached"
    elif (
        "network" in text
        or "ECONNREFUSED" in text
        or "fetch failed" in text
        or isinstance(exc, ConnectionError)
    ):
        category = ErrorCategory.NETWORK
        context = "Network error - check your connection"

    message = f"{context}: {text}" if text else context
    if stderr:
        message = f"{message}\n\nProcess output:\n{stderr}"
    return NormalizedError(
        category,
        message,
        {
            "context": context,
            "exception_type": type(exc).__name__,
            "stderr": stderr or "(no stderr captured)",
        },
    )
