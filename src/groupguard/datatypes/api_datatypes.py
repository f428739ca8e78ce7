"""Uniform result shape returned by every moderation API call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from groupguard.errors import ActionFailed, AuthError

T = TypeVar("T")

NOT_AUTHENTICATED = "Not authenticated"


@dataclass(slots=True)
class ApiResult(Generic[T]):
    """``{success, data, error}`` plus the HTTP status when one is known."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResult[Any]":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, status_code: int | None = None) -> "ApiResult[Any]":
        return cls(success=False, error=error, status_code=status_code)

    @property
    def not_authenticated(self) -> bool:
        return not self.success and self.status_code == 401

    @property
    def not_found(self) -> bool:
        return not self.success and self.status_code == 404

    def raise_for_auth(self) -> "ApiResult[T]":
        """Raise :class:`AuthError` when the call failed for lack of a session."""
        if self.not_authenticated:
            raise AuthError(self.error or NOT_AUTHENTICATED)
        return self

    def raise_for_action(self, action: str) -> "ApiResult[T]":
        """
        Check the result of a moderation action.

        Raises :class:`AuthError` on 401 and :class:`ActionFailed` for any other
        failure.
        """
        self.raise_for_auth()
        if not self.success:
            raise ActionFailed(action, self.error, self.status_code)
        return self
