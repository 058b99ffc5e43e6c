# tests/test_retry.py
import asyncio

import pytest

from poseflow.backoff import NETWORK, AttemptError, ErrorKind, RetryStrategy
from poseflow.retry import (
    CancelToken,
    batch_retry,
    cancellable_retry,
    retry_when,
    retry_with_backoff,
    retry_with_timeout,
    with_timeout,
)


def _failing_then(result, failures, kind=ErrorKind.NETWORK):
    calls = {"n": 0}

    async def op(token):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise AttemptError(kind, f"failure {calls['n']}", code="UPLOAD_FAILED")
        return result

    return op, calls


@pytest.mark.asyncio
async def test_succeeds_after_two_failures(permissive):
    op, calls = _failing_then("done", failures=2)
    seen = []

    result = await retry_with_backoff(op, permissive, on_retry=lambda n, err, delay: seen.append((n, delay)))

    assert result == "done"
    assert calls["n"] == 3
    assert seen == [(1, 1), (2, 2)]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(permissive):
    op, calls = _failing_then("never", failures=100)

    with pytest.raises(AttemptError) as exc_info:
        await retry_with_backoff(op, permissive)

    assert calls["n"] == permissive.max_retries + 1
    assert str(exc_info.value) == "failure 4"


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    strategy = RetryStrategy(max_retries=3, base_delay_ms=1, max_delay_ms=1, jitter=False,
                             retry_condition=lambda e: e.kind is ErrorKind.NETWORK)
    op, calls = _failing_then("never", failures=100, kind=ErrorKind.INVALID_PARAMS)

    with pytest.raises(AttemptError) as exc_info:
        await retry_with_backoff(op, strategy)

    assert calls["n"] == 1
    assert exc_info.value.kind is ErrorKind.INVALID_PARAMS


@pytest.mark.asyncio
async def test_plain_exceptions_are_normalised(permissive):
    async def op(token):
        raise ConnectionResetError("peer reset")

    with pytest.raises(AttemptError) as exc_info:
        await retry_with_backoff(op, permissive.replace(max_retries=0))

    assert exc_info.value.kind is ErrorKind.NETWORK
    assert isinstance(exc_info.value.__cause__, ConnectionResetError)


@pytest.mark.asyncio
async def test_failing_observer_does_not_stop_retries(permissive):
    op, calls = _failing_then(42, failures=1)

    def observer(n, err, delay):
        raise RuntimeError("observer broke")

    assert await retry_with_backoff(op, permissive, on_retry=observer) == 42
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_cancel_during_backoff_raises_user_abort():
    strategy = RetryStrategy(max_retries=3, base_delay_ms=10_000, max_delay_ms=10_000, jitter=False)
    op, calls = _failing_then("never", failures=100)
    waiting = asyncio.Event()

    task, token = cancellable_retry(op, strategy, on_retry=lambda *a: waiting.set())
    await asyncio.wait_for(waiting.wait(), 1.0)
    token.cancel("user left")

    with pytest.raises(AttemptError) as exc_info:
        await asyncio.wait_for(task, 1.0)

    assert exc_info.value.kind is ErrorKind.USER_ABORT
    assert exc_info.value.was_aborted
    assert str(exc_info.value) == "user left"
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_cancelled_token_prevents_first_attempt(permissive):
    op, calls = _failing_then("x", failures=0)
    token = CancelToken()
    token.cancel()

    with pytest.raises(AttemptError) as exc_info:
        await retry_with_backoff(op, permissive, token=token)

    assert exc_info.value.is_abort
    assert calls["n"] == 0


@pytest.mark.asyncio
async def test_cancel_runs_abort_hooks_once():
    token = CancelToken()
    fired = []

    def broken():
        raise RuntimeError("hook broke")

    token.add_abort_hook(broken)
    token.add_abort_hook(lambda: fired.append("a"))
    remove = token.add_abort_hook(lambda: fired.append("removed"))
    remove()

    token.cancel()
    token.cancel()
    assert fired == ["a"]

    # Hooks added after cancellation run immediately
    token.add_abort_hook(lambda: fired.append("late"))
    assert fired == ["a", "late"]


@pytest.mark.asyncio
async def test_with_timeout_aborts_slow_operation():
    aborted = []

    with pytest.raises(AttemptError) as exc_info:
        await with_timeout(asyncio.sleep(5), 0.01, abort=lambda: aborted.append(True))

    assert exc_info.value.kind is ErrorKind.TIMEOUT
    assert exc_info.value.code == "TIMEOUT"
    assert aborted == [True]


@pytest.mark.asyncio
async def test_with_timeout_passes_result_through():
    async def quick():
        return "fast"

    assert await with_timeout(quick(), 1.0) == "fast"
    assert await with_timeout(quick(), None) == "fast"


@pytest.mark.asyncio
async def test_retry_with_timeout_retries_hung_attempt():
    calls = {"n": 0}

    async def op(token):
        calls["n"] += 1
        if calls["n"] == 1:
            await asyncio.sleep(5)
        return "second try"

    strategy = NETWORK.replace(base_delay_ms=1, max_delay_ms=1, jitter=False)
    assert await retry_with_timeout(op, timeout_sec=0.02, strategy=strategy) == "second try"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_retry_when_condition_not_met(permissive):
    op, calls = _failing_then("x", failures=0)

    async def offline():
        return False

    with pytest.raises(AttemptError) as exc_info:
        await retry_when(offline, op, permissive)

    assert exc_info.value.kind is ErrorKind.INVALID_PARAMS
    assert exc_info.value.retryable is False
    assert calls["n"] == 0


@pytest.mark.asyncio
async def test_retry_when_condition_met(permissive):
    op, _ = _failing_then("ran", failures=1)

    async def online():
        return True

    assert await retry_when(online, op, permissive) == "ran"


@pytest.mark.asyncio
async def test_batch_retry_collects_results_and_errors(permissive):
    strategy = permissive.replace(retry_condition=lambda e: e.kind is ErrorKind.NETWORK)

    def make(i):
        async def op(token):
            if i == 2:
                raise AttemptError(ErrorKind.INVALID_PARAMS, "bad frame")
            return i * 10
        return op

    out = await batch_retry([make(i) for i in range(5)], strategy, concurrency=2)

    assert out.results == [0, 10, 30, 40]
    assert [idx for idx, _ in out.errors] == [2]
    assert out.total_count == 5
    assert out.success_count == 4
    assert out.error_count == 1


@pytest.mark.asyncio
async def test_batch_retry_fail_fast(permissive):
    async def bad(token):
        raise AttemptError(ErrorKind.INVALID_PARAMS, "bad", retryable=False)

    async def good(token):
        return 1

    strategy = permissive.replace(retry_condition=lambda e: False)
    with pytest.raises(AttemptError, match="bad"):
        await batch_retry([good, bad, good], strategy, concurrency=3, fail_fast=True)


@pytest.mark.asyncio
async def test_late_failing_hook_is_isolated():
    token = CancelToken()
    token.cancel()

    def broken():
        raise RuntimeError("hook broke")

    remove = token.add_abort_hook(broken)
    remove()
    assert token.cancelled
