"""Exception types shared across the engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class SmsEngineError(RuntimeError):
    """Base class for engine errors."""


class ConfigError(SmsEngineError):
    """Unrecoverable configuration problem, raised at startup."""


class ValidationError(SmsEngineError, ValueError):
    """Input rejected before anything was persisted."""


class NotFoundError(SmsEngineError, LookupError):
    pass


class DuplicateRecordError(SmsEngineError):
    """A unique insert collided with an existing row."""

    def __init__(self, message: str, *, existing: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.existing = existing


class GatewayError(SmsEngineError):
    """Custom error that carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"
