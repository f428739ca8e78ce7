"""Error taxonomy shared by the network layer, the resolver and the enforcement loops."""

from __future__ import annotations


class GroupGuardError(Exception):
    """Base class for all GroupGuard errors."""


class ApiHttpError(GroupGuardError):
    """Raised by the raw API client when a request returns a non-success status."""

    def __init__(self, status_code: int | None, message: str = "") -> None:
        self.status_code = status_code
        self.message = message or f"HTTP {status_code}"
        super().__init__(self.message)


class AuthError(GroupGuardError):
    """The session is not authenticated. Callers must stop instead of retrying."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class RateLimitError(GroupGuardError):
    """The API throttled the request (HTTP 429)."""


class ConfigParseError(GroupGuardError):
    """A rule's JSON configuration could not be decoded."""


class ResolverUnavailable(GroupGuardError):
    """User or group enrichment could not be fetched."""


class ActionFailed(GroupGuardError):
    """A moderation action (ban, reject, close) was refused or errored."""

    def __init__(self, action: str, message: str | None = None, status_code: int | None = None) -> None:
        self.action = action
        self.status_code = status_code
        super().__init__(f"{action} failed: {message or 'unknown error'}")
