"""
Retry and timeout handling for adapter calls.

Provides:
- Bounded retry with exponential backoff
- Explicit timeouts that surface as ``OperationTimeoutError``
- Classification of failures into error-record types
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.config import RetrySettings
from ..core.exceptions import (
    VectorSyncError,
    AdapterConnectionError,
    OperationTimeoutError,
    ValidationError,
    DimensionMismatchError,
    RetryExhaustedError
)
from ..models.execution import ErrorType
from ..utils.logger import get_logger
from ..utils.metrics import SyncMetrics


@dataclass
class RetryPolicy:
    """How many times an operation runs and how long to wait in between."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retries,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds
        )

    def delay_for(self, attempt: int) -> float:
        """
        Backoff before the attempt following ``attempt`` (1-based).

        Doubles from ``base_delay`` on every attempt and is capped at ``max_delay``.
        """
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, VectorSyncError):
        return error.retryable
    return isinstance(error, Exception)


def classify_error(error: BaseException) -> ErrorType:
    """Map an exception onto the error-record taxonomy."""
    if isinstance(error, RetryExhaustedError):
        error = error.last_error
    if isinstance(error, (AdapterConnectionError, ConnectionError)):
        return ErrorType.CONNECTION
    if isinstance(error, (OperationTimeoutError, asyncio.TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, DimensionMismatchError):
        return ErrorType.DIMENSION_MISMATCH
    if isinstance(error, ValidationError):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


async def call_with_timeout(awaitable: Awaitable, timeout: Optional[float], operation: str) -> Any:
    """
    Await ``awaitable`` for at most ``timeout`` seconds.

    Raises:
        OperationTimeoutError: If the timeout elapses first
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout) from None


class RetryExecutor:
    """Runs coroutine functions under a ``RetryPolicy``."""

    def __init__(
        self,
        policy: RetryPolicy,
        metrics: Optional[SyncMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.policy = policy
        self.metrics = metrics
        self._sleep = sleep
        self.logger = get_logger(__name__)

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        operation: str,
        timeout: Optional[float] = None,
        on_retry: Optional[Callable[[int, Exception], Awaitable[None]]] = None,
        **kwargs
    ) -> Any:
        """
        Call ``func`` until it succeeds or the attempts run out.

        Args:
            func: Coroutine function to call
            operation: Name used in logs and errors
            timeout: Per-attempt timeout in seconds
            on_retry: Awaited with (attempt, error) before each retry

        Returns:
            The first successful result

        Raises:
            RetryExhaustedError: After ``max_attempts`` retryable failures
            Exception: A non-retryable failure, unchanged
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return await call_with_timeout(func(*args, **kwargs), timeout, operation)
            except Exception as e:
                last_error = e
                if not is_retryable(e):
                    self.logger.error(f"Non-retryable failure in {operation}: {e}")
                    raise

                if attempt >= self.policy.max_attempts:
                    break

                if on_retry is not None:
                    await on_retry(attempt, e)

                delay = self.policy.delay_for(attempt)
                self.logger.warning(
                    f"{operation} failed on attempt {attempt}/{self.policy.max_attempts}, retrying in {delay:.2f}s",
                    extra={"operation": operation, "attempt": attempt, "error": str(e)}
                )
                if self.metrics:
                    self.metrics.write_retries.labels(operation=operation.split(":")[0]).inc()
                await self._sleep(delay)

        self.logger.error(f"{operation} exhausted {self.policy.max_attempts} attempts: {last_error}")
        raise RetryExhaustedError(operation, self.policy.max_attempts, last_error)
