"""
Rate/backoff helper for calls to the VRChat moderation API.

Every external call goes through :meth:`RequestExecutor.execute`:

- 429 responses, including errors reported in the response body, are
  retried with exponential backoff
  (``base_delay * 2 ** (attempt - 1)``) up to ``max_retries`` times
- 401 responses fail fast with a distinct "Not authenticated" result
- any other failure is returned as an unsuccessful :class:`ApiResult`

The executor never raises for API failures, only for cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from groupguard.datatypes.api_datatypes import NOT_AUTHENTICATED, ApiResult
from groupguard.errors import ApiHttpError, AuthError, RateLimitError
from groupguard.util.logger import get_logger

logger = get_logger("request_executor")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
RATE_LIMITED_MESSAGE = "Rate Limited (Max Retries)"

Operation = Callable[[], Awaitable[Any]]


class RequestExecutor:
    """Runs API operations with bounded retry on throttling."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def execute(self, operation: Operation, context: str = "request") -> ApiResult[Any]:
        """Run ``operation`` and wrap its outcome in an :class:`ApiResult`.

        Args:
            operation: Zero-argument coroutine factory performing the raw call.
            context: Short description used in log messages.
        """
        try:
            data = None
            async for attempt in self._retrying():
                with attempt:
                    data = await self._invoke(operation)
            return ApiResult.ok(data)
        except asyncio.CancelledError:
            raise
        except AuthError:
            logger.error("[NETWORK] %s failed: not authenticated", context)
            return ApiResult.failure(NOT_AUTHENTICATED, 401)
        except (RateLimitError, RetryError):
            logger.error("[NETWORK] %s still rate limited after %d retries", context, self.max_retries)
            return ApiResult.failure(RATE_LIMITED_MESSAGE, 429)
        except ApiHttpError as exc:
            logger.warning("[NETWORK] %s failed with HTTP %s: %s", context, exc.status_code, exc.message)
            return ApiResult.failure(exc.message, exc.status_code)
        except Exception as exc:
            logger.error("[NETWORK] %s failed: %s", context, exc)
            return ApiResult.failure(str(exc) or type(exc).__name__)

    @staticmethod
    async def _invoke(operation: Operation) -> Any:
        try:
            data = await operation()
            # body-level errors use the same status mapping as HTTP errors
            if isinstance(data, dict) and data.get("error"):
                error = data["error"]
                status = error.get("status_code") if isinstance(error, dict) else None
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ApiHttpError(int(status or 0), str(message or "Unknown error"))
        except ApiHttpError as exc:
            if exc.status_code == 429:
                raise RateLimitError(exc.message) from exc
            if exc.status_code == 401:
                raise AuthError(exc.message) from exc
            raise
        return data
