"""Retrying client for external service calls with error classification.

One abstraction for every remote call a job makes (prompt enhancement, image
synthesis): bounded attempts, exponential backoff capped at a maximum delay,
retry only on transient errors. The client is a pure function of the call it
is given; it never touches job rows or the credit ledger.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from genjobs.services.exceptions import (
    PermanentError,
    PermanentExternalError,
    ServiceError,
    TransientError,
    TransientExternalError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from a vendor SDK or network layer

    Returns:
        Classified TransientExternalError or PermanentExternalError instance

    Classification rules:
        - Timeout errors → transient
        - 429 (rate limit) → transient
        - 503 (service unavailable) / "temporarily unavailable" → transient
        - 401/403 (authentication) → permanent
        - Connection errors → transient
        - Anything else → permanent
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)) or "timeout" in error_message_lower:
        return TransientExternalError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientExternalError(f"Rate limit exceeded: {error_message}")

    if (
        "503" in error_message
        or "service unavailable" in error_message_lower
        or "temporarily unavailable" in error_message_lower
    ):
        return TransientExternalError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return PermanentExternalError(f"Authentication failed: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return TransientExternalError(f"Connection error: {error_message}")

    return PermanentExternalError(f"Permanent error: {error_message}")


class ExternalCallClient:
    """Invoke a remote call with bounded retries and exponential backoff.

    Delay before attempt n+1 is min(base_delay * 2 ** (n - 1), max_delay).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize client.

        Args:
            max_attempts: Total attempts including the first (default: 3)
            base_delay: Delay in seconds after the first failure (default: 1.0)
            max_delay: Upper bound for any single delay (default: 5.0)
            timeout: Per-attempt timeout in seconds, None for no timeout
            sleep: Awaitable sleep used between attempts (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep
        self.last_attempts = 0

    def backoff_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def invoke(self, call: Callable[[], Awaitable[T]], *, operation: str) -> T:
        """Run `call` until it succeeds, fails permanently, or attempts run out.

        Args:
            call: Zero-argument coroutine factory; invoked once per attempt
            operation: Name used in log events (e.g. "prompt_enhancement")

        Returns:
            The call's result

        Raises:
            PermanentError: Immediately, on a non-retryable failure
            TransientError: The last transient failure once attempts are exhausted
        """
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            self.last_attempts = attempt
            try:
                if self.timeout is not None:
                    return await asyncio.wait_for(call(), timeout=self.timeout)
                return await call()

            except PermanentError as e:
                logger.error(
                    "external.failed",
                    operation=operation,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                raise

            except TransientError as e:
                last_error = e

            except asyncio.TimeoutError as e:
                last_error = TransientExternalError(
                    f"{operation} timed out after {self.timeout}s"
                )
                last_error.__cause__ = e

            except Exception as e:
                retryable = getattr(e, "retryable", None)
                if retryable is None:
                    classified = classify_error(e)
                    if not classified.retryable:  # type: ignore[attr-defined]
                        logger.error(
                            "external.failed",
                            operation=operation,
                            attempt=attempt,
                            error_type=type(e).__name__,
                            error_message=str(e),
                        )
                        raise classified from e
                    last_error = classified
                    last_error.__cause__ = e
                elif retryable:
                    last_error = e
                else:
                    raise

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "external.retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error_message=str(last_error),
                )
                await self._sleep(delay)

        logger.error(
            "external.exhausted",
            operation=operation,
            attempts=self.max_attempts,
            error_message=str(last_error),
        )
        assert last_error is not None
        raise last_error
