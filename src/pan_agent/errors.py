"""
PAN agent error types.

Every failure surfaced to a caller is a PanAgentError carrying a stable `code`.
"""

from typing import Any, Optional


class PanAgentError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class ConnectTimeout(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("connect_timeout", message, details)


class HandshakeTimeout(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("handshake_timeout", message, details)


class AuthenticationFailed(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("auth_failed", message, details)


class InvalidState(PanAgentError):
    def __init__(self, message: str, state: Optional[str] = None, code: str = "invalid_state"):
        super().__init__(code, message, {"state": state} if state is not None else None)
        self.state = state


class NotAuthenticated(InvalidState):
    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message, state, code="not_authenticated")


class JoinFailed(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("join_failed", message, details)


class LeaveFailed(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("leave_failed", message, details)


class RequestTimeout(PanAgentError):
    def __init__(self, message: str, key: Optional[str] = None, timeout_ms: Optional[int] = None):
        super().__init__("request_timeout", message, {"key": key, "timeout_ms": timeout_ms})
        self.key = key
        self.timeout_ms = timeout_ms


class ConnectionClosed(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("connection_closed", message, details)


class MalformedFrame(PanAgentError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("malformed_frame", message, details)
