"""
BearBridge exceptions.

Every failure a command can end in has its own type so callers can decide
whether a retry makes sense (timeouts and transport failures are plausibly
transient, validation errors are not).
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BearBridgeError(RuntimeError):
    """Base class for bridge errors."""

    retryable: bool = False


class ValidationError(BearBridgeError, ValueError):
    """Raised when command input is malformed, before any external interaction."""

    def __init__(self, detail: str, *, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(detail)


class TransportFailure(BearBridgeError):
    """Raised when the outbound invocation could not be dispatched."""

    retryable = True

    def __init__(
        self,
        detail: str,
        *,
        action: Optional[str] = None,
        returncode: Optional[int] = None,
    ) -> None:
        self.action = action
        self.returncode = returncode
        action_hint = f" [{action}]" if action else ""
        code_hint = f" (exit={returncode})" if returncode is not None else ""
        super().__init__(f"{detail}{code_hint}{action_hint}")


class ListenerError(TransportFailure):
    """Raised when the local callback endpoint fails to bind or serve."""


class CommandTimeoutError(BearBridgeError, TimeoutError):
    """Raised when no callback arrives before the deadline."""

    retryable = True

    def __init__(self, action: str, timeout: float, detail: Optional[str] = None) -> None:
        self.action = action
        self.timeout = timeout
        super().__init__(detail or f"No callback from Bear for '{action}' within {timeout:g}s")


class CommandCancelledError(CommandTimeoutError):
    """Raised when an in-flight exchange is cancelled before its deadline."""

    def __init__(self, action: str, timeout: float) -> None:
        super().__init__(action, timeout, f"Command '{action}' was cancelled before Bear replied")


class CallbackError(BearBridgeError):
    """Raised when Bear answered on its x-error channel."""

    def __init__(self, action: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.action = action
        self.payload: Dict[str, Any] = dict(payload or {})
        self.error_code = self.payload.get("errorCode")
        self.error_message = self.payload.get("errorMessage")
        detail = self.error_message or "Bear reported an error"
        code_hint = f" (code={self.error_code})" if self.error_code is not None else ""
        super().__init__(f"{detail}{code_hint} [{action}]")


class DatabaseError(BearBridgeError):
    """Raised when the Bear database cannot be opened or queried."""
