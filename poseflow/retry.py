"""
PoseFlow Retry Executor

Drives one asynchronous operation through repeated attempts according to a
RetryStrategy. Cancellation is explicit: every operation receives a
CancelToken, and the token is checked before each attempt and while
waiting out a backoff delay.

Also provides:
- with_timeout() / retry_with_timeout(): race an attempt against a timer
- cancellable_retry(): run a retry loop as a task with its own token
- retry_when(): gate a retry loop behind a precondition
- batch_retry(): run many operations in bounded slices
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .backoff import (
    CODE_TIMEOUT,
    CODE_USER_ABORT,
    NETWORK,
    AttemptError,
    ErrorKind,
    RetryStrategy,
    next_delay,
    should_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[["CancelToken"], Awaitable[T]]
OnRetry = Callable[[int, AttemptError, float], Any]


# =============================================================================
# CANCELLATION
# =============================================================================

class CancelToken:
    """
    Cooperative cancellation handle.

    cancel() is idempotent. Abort hooks registered by the running attempt
    (e.g. an upload's abort()) run once, synchronously, on the first cancel.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._hooks: list[Callable[[], Any]] = []
        self._reason = "Cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("Abort hook failed")

    def add_abort_hook(self, hook: Callable[[], Any]) -> Callable[[], None]:
        """Register `hook` to run on cancel; returns a function that removes it."""
        if self.cancelled:
            try:
                hook()
            except Exception:
                logger.exception("Abort hook failed")
            return lambda: None
        self._hooks.append(hook)

        def remove() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return remove

    def abort_error(self) -> AttemptError:
        return AttemptError(
            ErrorKind.USER_ABORT,
            self._reason,
            code=CODE_USER_ABORT,
            was_aborted=True,
        )

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.abort_error()

    async def sleep(self, delay_sec: float) -> None:
        """Sleep for `delay_sec`, raising the abort error as soon as the token is cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay_sec))
        except asyncio.TimeoutError:
            return
        raise self.abort_error()


# =============================================================================
# CORE RETRY LOOP
# =============================================================================

async def retry_with_backoff(
    operation: Operation[T],
    strategy: RetryStrategy,
    on_retry: Optional[OnRetry] = None,
    token: Optional[CancelToken] = None,
    rng: Any = None,
) -> T:
    """
    Run `operation(token)` until it succeeds or the strategy gives up.

    Total attempts are at most strategy.max_retries + 1. Any exception
    raised by the operation is normalised to an AttemptError; the last
    one is raised when retrying stops.

    Args:
        operation: Coroutine function taking the CancelToken
        strategy: Backoff configuration
        on_retry: Observer called as on_retry(attempt_number, error, delay_ms)
                  before each backoff wait; its failures are logged only
        token: Cancellation token (a private one is created if omitted)
        rng: Random source for jitter

    Raises:
        AttemptError: The final error
    """
    token = token or CancelToken()
    last_error: Optional[AttemptError] = None

    for attempt in range(strategy.max_retries + 1):
        token.raise_if_cancelled()
        started = time.monotonic()
        try:
            result = await operation(token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = AttemptError.from_exception(exc)
            if token.cancelled and not error.is_abort:
                error = token.abort_error()
            last_error = error
        else:
            if attempt > 0:
                logger.info(
                    "Succeeded after %d retries (last attempt took %.0f ms)",
                    attempt, (time.monotonic() - started) * 1000,
                )
            return result

        if not should_retry(attempt, last_error, strategy):
            logger.warning("Final failure after %d attempt(s): %r", attempt + 1, last_error)
            raise last_error

        delay_ms = next_delay(attempt, strategy, rng)
        logger.warning(
            "Attempt %d/%d failed (%s, code=%s), retrying in %d ms",
            attempt + 1, strategy.max_retries + 1,
            last_error.kind.name, last_error.code, round(delay_ms),
        )

        if on_retry is not None:
            try:
                on_retry(attempt + 1, last_error, delay_ms)
            except Exception:
                logger.exception("on_retry observer failed")

        await token.sleep(delay_ms / 1000.0)

    # max_retries + 1 attempts always end in return or raise above
    assert last_error is not None
    raise last_error


def cancellable_retry(
    operation: Operation[T],
    strategy: RetryStrategy,
    on_retry: Optional[OnRetry] = None,
    rng: Any = None,
) -> tuple[asyncio.Task, CancelToken]:
    """Schedule a retry loop on the running loop; returns (task, token)."""
    token = CancelToken()
    task = asyncio.ensure_future(
        retry_with_backoff(operation, strategy, on_retry=on_retry, token=token, rng=rng)
    )
    return task, token


# =============================================================================
# TIMEOUTS
# =============================================================================

async def with_timeout(
    awaitable: Awaitable[T],
    timeout_sec: Optional[float],
    abort: Optional[Callable[[], Any]] = None,
) -> T:
    """
    Await `awaitable`, failing with a TIMEOUT AttemptError after `timeout_sec`.

    On timeout `abort()` is called (if given) so the underlying operation
    can release its resources.
    """
    if timeout_sec is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_sec)
    except asyncio.TimeoutError:
        if abort is not None:
            try:
                abort()
            except Exception:
                logger.exception("Abort after timeout failed")
        raise AttemptError(
            ErrorKind.TIMEOUT,
            f"Timed out after {timeout_sec:g}s",
            code=CODE_TIMEOUT,
        ) from None


async def retry_with_timeout(
    operation: Operation[T],
    timeout_sec: float = 30.0,
    strategy: RetryStrategy = NETWORK,
    on_retry: Optional[OnRetry] = None,
    token: Optional[CancelToken] = None,
) -> T:
    """retry_with_backoff() where every attempt is bounded by `timeout_sec`."""

    async def timed(tok: CancelToken) -> T:
        return await with_timeout(operation(tok), timeout_sec)

    return await retry_with_backoff(timed, strategy, on_retry=on_retry, token=token)


async def retry_when(
    condition: Callable[[], Awaitable[bool]],
    operation: Operation[T],
    strategy: RetryStrategy,
    on_retry: Optional[OnRetry] = None,
    token: Optional[CancelToken] = None,
) -> T:
    """Run the retry loop only if `condition()` holds."""
    if not await condition():
        raise AttemptError(ErrorKind.INVALID_PARAMS, "Retry condition not met", retryable=False)
    return await retry_with_backoff(operation, strategy, on_retry=on_retry, token=token)


# =============================================================================
# BATCH RETRY
# =============================================================================

@dataclass
class BatchRetryResult:
    """Result of batch_retry(); `errors` holds (index, error) pairs."""
    results: list[Any] = field(default_factory=list)
    errors: list[tuple[int, AttemptError]] = field(default_factory=list)
    total_count: int = 0

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)


async def batch_retry(
    operations: list[Operation[Any]],
    strategy: RetryStrategy,
    concurrency: int = 3,
    fail_fast: bool = False,
) -> BatchRetryResult:
    """
    Run operations in consecutive slices of `concurrency`, each with retries.

    Results are kept in input order. With fail_fast the first final error
    is raised once its slice has settled.
    """
    out = BatchRetryResult(total_count=len(operations))
    step = max(1, concurrency)

    for start in range(0, len(operations), step):
        chunk = operations[start:start + step]
        settled = await asyncio.gather(
            *(retry_with_backoff(op, strategy) for op in chunk),
            return_exceptions=True,
        )
        for offset, value in enumerate(settled):
            if isinstance(value, asyncio.CancelledError):
                raise value
            if isinstance(value, BaseException):
                error = AttemptError.from_exception(value)
                out.errors.append((start + offset, error))
                if fail_fast:
                    raise error
            else:
                out.results.append(value)

    return out
