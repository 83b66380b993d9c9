from __future__ import annotations

from datetime import datetime


class PosGuardError(Exception):
    """Base error for posguard."""


class ConfigurationError(PosGuardError):
    """Missing or invalid configuration detected at construction time."""


class ElevationError(PosGuardError):
    """Step-up authentication failure surfaced to the API layer."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class ElevationDeniedError(ElevationError):
    """Credential or permission check failed for an elevation request."""


class ElevationRateLimitedError(ElevationError):
    """Too many failed elevation attempts inside the rate limit window."""

    def __init__(self, message: str, *, window_start: datetime, window_ms: int) -> None:
        super().__init__(message, code="RATE_LIMITED")
        self.window_start = window_start
        self.window_ms = window_ms


class ElevationTokenError(ElevationError):
    """Elevation token is invalid, expired, or out of scope."""


class ElevationReplayError(ElevationError):
    """Elevation token has already been redeemed."""
