"""
Bounded retry and circuit breaking for outbound calls.

Retries are applied explicitly at call sites:

    product = await retry_async(
        lambda: source.fetch_by_id(product_id),
        policy=RetryPolicy(max_attempts=3),
        operation_name="shopify.fetch_product",
        logger=log,
    )

Backoff formula: base_delay * (2^attempt) +/- jitter, capped at max_delay.
Each attempt runs under its own timeout; a timeout counts as a transient
failure. Non-retryable errors are raised on the first occurrence. Calls that
go through a CircuitBreaker pass the timeout to ``CircuitBreaker.call``
instead, so the breaker sees the timeout rather than a cancellation.
"""

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from catalog_sync.errors import (
    CircuitOpenError,
    PermanentTaskError,
    TransientError,
    UpstreamAPIError,
)
from catalog_sync.logging_context import LoggerLike

logger = logging.getLogger(__name__)
_module_logger = logger

# Retry configuration constants
DEFAULT_MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 0.5
MAX_DELAY_SECONDS = 10.0
JITTER_FACTOR = 0.1  # +/- 10% jitter
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 10.0

# Circuit breaker defaults
FAILURE_THRESHOLD = 5
RESET_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_seconds: Delay after the first failed attempt
        max_delay_seconds: Maximum delay cap
        jitter_factor: Random jitter factor (0.1 = +/- 10%)
        attempt_timeout_seconds: Per-attempt timeout (None disables)
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR
    attempt_timeout_seconds: Optional[float] = DEFAULT_ATTEMPT_TIMEOUT_SECONDS


def calculate_backoff(attempt: int, policy: RetryPolicy = RetryPolicy()) -> float:
    """
    Delay before the retry that follows failed attempt ``attempt`` (0-indexed).

    Formula: min(base * 2^attempt +/- jitter, max_delay)
    """
    delay = policy.base_delay_seconds * (2 ** attempt)

    if policy.jitter_factor:
        jitter_range = delay * policy.jitter_factor
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(min(delay, policy.max_delay_seconds), 0.0)


def is_transient(exc: BaseException) -> bool:
    """Default classifier: transient errors and timeouts are retried."""
    if isinstance(exc, PermanentTaskError):
        return False
    if isinstance(exc, CircuitOpenError):
        # The breaker will not close within a local retry window
        return False
    if isinstance(exc, UpstreamAPIError):
        return exc.transient
    if isinstance(exc, (TransientError, asyncio.TimeoutError, TimeoutError)):
        return True
    return False


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy = RetryPolicy(),
    is_retryable: Callable[[BaseException], bool] = is_transient,
    operation_name: str = "operation",
    logger: Optional[LoggerLike] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run ``operation`` with bounded retries.

    Args:
        operation: Zero-argument coroutine factory
        policy: Attempts, backoff and per-attempt timeout
        is_retryable: Error classifier
        operation_name: Name used in log lines
        logger: Logger (bound to task context by callers)
        sleep: Sleep function (tests pass a no-op)

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error. Timeouts are raised as TransientError.
    """
    log = logger if logger is not None else _module_logger
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        try:
            if policy.attempt_timeout_seconds:
                result = await asyncio.wait_for(
                    operation(), timeout=policy.attempt_timeout_seconds
                )
            else:
                result = await operation()

            if attempt > 0:
                log.info("retry.succeeded", extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_attempts": policy.max_attempts,
                })
            return result

        except (asyncio.TimeoutError, TimeoutError) as e:
            last_error = TransientError(
                f"{operation_name} timed out",
                attempt=attempt + 1,
            )
            last_error.__cause__ = e
        except Exception as e:
            last_error = e

        retryable = is_retryable(last_error)
        remaining = policy.max_attempts - attempt - 1

        log.warning("retry.attempt_failed", extra={
            "operation": operation_name,
            "attempt": attempt + 1,
            "max_attempts": policy.max_attempts,
            "retryable": retryable,
            "error": str(last_error),
            "error_type": type(last_error).__name__,
        })

        if not retryable or remaining <= 0:
            break

        await sleep(calculate_backoff(attempt, policy))

    assert last_error is not None
    raise last_error


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-collaborator circuit breaker.

    Opens after ``failure_threshold`` consecutive transient failures and
    short-circuits calls with CircuitOpenError until ``reset_timeout_seconds``
    have passed. Then one trial call is let through (half-open): success
    closes the circuit, failure re-opens it.

    Permanent errors (e.g. 404) do not count as failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = FAILURE_THRESHOLD,
        reset_timeout_seconds: float = RESET_TIMEOUT_SECONDS,
        counts_as_failure: Callable[[BaseException], bool] = is_transient,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._counts_as_failure = counts_as_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout_seconds
        ):
            return CircuitState.HALF_OPEN
        return self._state

    def _before_call(self) -> None:
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open",
                circuit=self.name,
            )
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is half-open with a trial in flight",
                    circuit=self.name,
                )
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit.closed", extra={"circuit": self.name})
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        self._trial_in_flight = False
        if (
            self._state == CircuitState.HALF_OPEN
            or self._consecutive_failures >= self.failure_threshold
        ):
            if self._state != CircuitState.OPEN:
                logger.warning("circuit.opened", extra={
                    "circuit": self.name,
                    "consecutive_failures": self._consecutive_failures,
                })
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    async def call(
        self,
        operation: Callable[[], Awaitable[Any]],
        timeout_seconds: Optional[float] = None,
    ) -> Any:
        """
        Run ``operation`` through the breaker.

        A call that exceeds ``timeout_seconds`` raises asyncio.TimeoutError
        and counts as a failure, so a hung collaborator opens the circuit.
        """
        self._before_call()
        try:
            if timeout_seconds:
                result = await asyncio.wait_for(operation(), timeout=timeout_seconds)
            else:
                result = await operation()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as e:
            if self._counts_as_failure(e):
                self.record_failure()
            else:
                # Permanent errors still prove the collaborator is reachable
                self.record_success()
            raise
        self.record_success()
        return result
