"""Shared exception types for the position engine."""

from typing import Optional


class EngineError(RuntimeError):
    """Base class for errors raised by the position engine."""


class ValidationError(EngineError):
    """Raised when a request is malformed. No side effect has occurred."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class PolicyViolation(EngineError):
    """Raised when the risk policy blocks a proposed entry."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__(f"entry blocked: {reason}" + (f" ({detail})" if detail else ""))
        self.reason = reason
        self.detail = detail


class NotFound(EngineError):
    """Raised when a managed position id is unknown."""

    def __init__(self, position_id: str):
        super().__init__(f"managed position not found: {position_id}")
        self.position_id = position_id


class TransientGatewayError(EngineError):
    """Raised when the broker cannot be reached safely (network, timeout, 429/5xx)."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class PersistenceError(EngineError):
    """Raised when a durable write (store or activity log) fails."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class GatewayRejected(EngineError):
    """Raised when the broker rejects a request outright (4xx other than 429)."""

    def __init__(self, source: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(f"{source} (HTTP {status_code}): {body}" if status_code else source)
        self.source = source
        self.status_code = status_code
        self.body = body
