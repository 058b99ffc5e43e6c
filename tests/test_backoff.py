# tests/test_backoff.py
import asyncio
import random

import aiohttp
import pytest

from poseflow.backoff import (
    FAST,
    NETWORK,
    UPLOAD,
    AttemptError,
    ErrorKind,
    RetryStrategy,
    StrategyPreset,
    condition_accepts,
    get_strategy,
    next_delay,
    should_retry,
)
from poseflow.single_upload import UploadOutcome


def test_next_delay_without_jitter_is_exponential_and_capped():
    strategy = RetryStrategy(max_retries=5, base_delay_ms=1000, max_delay_ms=10_000, backoff_factor=2, jitter=False)
    assert [next_delay(i, strategy) for i in range(5)] == [1000, 2000, 4000, 8000, 10_000]


def test_upload_preset_delays():
    strategy = UPLOAD.replace(jitter=False)
    assert next_delay(0, strategy) == 2000
    assert next_delay(1, strategy) == 5000
    assert next_delay(2, strategy) == 12_500
    assert next_delay(3, strategy) == 15_000


def test_next_delay_jitter_stays_within_bounds():
    rng = random.Random(1234)
    for strategy in (NETWORK, UPLOAD, FAST):
        for attempt in range(4):
            nominal = min(strategy.base_delay_ms * strategy.backoff_factor ** attempt, strategy.max_delay_ms)
            for _ in range(200):
                delay = next_delay(attempt, strategy, rng)
                assert nominal * 0.75 <= delay <= nominal * 1.25
                assert delay >= strategy.base_delay_ms * 0.5


def test_next_delay_jitter_is_reproducible_with_seeded_rng():
    a = [next_delay(i, NETWORK, random.Random(7)) for i in range(3)]
    b = [next_delay(i, NETWORK, random.Random(7)) for i in range(3)]
    assert a == b


class _FixedRandom:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def test_next_delay_jitter_extremes():
    assert next_delay(0, NETWORK, _FixedRandom(0.0)) == pytest.approx(750)
    assert next_delay(0, NETWORK, _FixedRandom(1.0)) == pytest.approx(1250)
    assert next_delay(0, NETWORK, _FixedRandom(0.5)) == pytest.approx(1000)


@pytest.mark.parametrize("strategy", [NETWORK, UPLOAD, FAST, RetryStrategy()])
def test_should_retry_stops_at_max_retries(strategy):
    error = AttemptError(ErrorKind.NETWORK, "boom", code="UPLOAD_FAILED")
    assert should_retry(strategy.max_retries, error, strategy) is False
    assert should_retry(strategy.max_retries + 1, error, strategy) is False


def test_abort_is_never_retried():
    permissive = RetryStrategy(max_retries=5, retry_condition=lambda e: True)
    assert should_retry(0, AttemptError(ErrorKind.USER_ABORT), permissive) is False
    assert should_retry(0, AttemptError(ErrorKind.NETWORK, was_aborted=True), permissive) is False
    assert should_retry(0, AttemptError(ErrorKind.SERVER, code="USER_ABORT"), permissive) is False


def test_upload_condition():
    assert should_retry(0, AttemptError(ErrorKind.NETWORK, code="UPLOAD_FAILED"), UPLOAD)
    assert should_retry(0, AttemptError(ErrorKind.SERVER, code="HTTP_ERROR"), UPLOAD)
    assert should_retry(0, AttemptError(ErrorKind.NETWORK, code="NETWORK_ERROR"), UPLOAD)
    assert not should_retry(0, AttemptError(ErrorKind.INVALID_PARAMS, code="NO_KEYPOINT"), UPLOAD)
    assert not should_retry(0, AttemptError(ErrorKind.SERVER, code="INVALID_JSON"), UPLOAD)


def test_network_condition():
    assert should_retry(0, AttemptError(ErrorKind.TIMEOUT), NETWORK)
    assert should_retry(0, AttemptError(ErrorKind.SERVER), NETWORK)
    assert not should_retry(0, AttemptError(ErrorKind.INVALID_PARAMS), NETWORK)
    assert not should_retry(0, AttemptError(ErrorKind.QUOTA_EXCEEDED), NETWORK)


def test_fast_condition_honours_retryable_hint():
    assert should_retry(0, AttemptError(ErrorKind.SERVER), FAST)
    assert not should_retry(0, AttemptError(ErrorKind.SERVER, retryable=False), FAST)


def test_failing_condition_means_no_retry():
    def explode(error):
        raise RuntimeError("bad condition")

    strategy = RetryStrategy(retry_condition=explode)
    assert should_retry(0, AttemptError(ErrorKind.NETWORK), strategy) is False


@pytest.mark.parametrize(
    "changes",
    [
        {"max_retries": -1},
        {"base_delay_ms": 0},
        {"base_delay_ms": 500, "max_delay_ms": 100},
        {"backoff_factor": 1},
        {"retry_condition": "yes"},
    ],
)
def test_invalid_strategies_are_rejected(changes):
    with pytest.raises(ValueError):
        RetryStrategy(**changes)


def test_strategy_is_immutable():
    with pytest.raises(Exception):
        NETWORK.max_retries = 10
    assert NETWORK.replace(max_retries=10).max_retries == 10
    assert NETWORK.max_retries == 3


def test_get_strategy():
    assert get_strategy("upload") is UPLOAD
    assert get_strategy(" NETWORK ") is NETWORK
    assert get_strategy(StrategyPreset.FAST) is FAST
    with pytest.raises(ValueError, match="Unknown retry strategy"):
        get_strategy("aggressive")


def test_presets():
    assert (UPLOAD.max_retries, UPLOAD.base_delay_ms, UPLOAD.max_delay_ms, UPLOAD.backoff_factor) == (2, 2000, 15_000, 2.5)
    assert (NETWORK.max_retries, NETWORK.base_delay_ms, NETWORK.max_delay_ms) == (3, 1000, 10_000)
    assert (FAST.max_retries, FAST.base_delay_ms, FAST.max_delay_ms) == (2, 500, 2000)


def test_from_exception_classifies():
    assert AttemptError.from_exception(asyncio.TimeoutError()).kind is ErrorKind.TIMEOUT
    net = AttemptError.from_exception(aiohttp.ClientConnectionError("refused"))
    assert net.kind is ErrorKind.NETWORK
    assert net.code == "NETWORK_ERROR"
    assert AttemptError.from_exception(ConnectionResetError()).kind is ErrorKind.NETWORK
    assert AttemptError.from_exception(ValueError("x")).kind is ErrorKind.INVALID_PARAMS
    server = AttemptError.from_exception(RuntimeError("boom"))
    assert server.kind is ErrorKind.SERVER
    assert isinstance(server.__cause__, RuntimeError)


def test_from_exception_passes_attempt_errors_through():
    err = AttemptError(ErrorKind.QUOTA_EXCEEDED, "slow down")
    assert AttemptError.from_exception(err) is err


def test_from_outcome():
    aborted = AttemptError.from_outcome(UploadOutcome.failure("ABORTED", "cancelled", "p1", was_aborted=True))
    assert aborted.kind is ErrorKind.USER_ABORT
    assert aborted.is_abort

    http = AttemptError.from_outcome(UploadOutcome.failure("HTTP_ERROR", "HTTP 502: Bad Gateway", "p1"))
    assert http.kind is ErrorKind.SERVER
    assert http.code == "HTTP_ERROR"
    assert http.outcome.msg == "HTTP 502: Bad Gateway"
    assert not http.is_abort


@pytest.mark.parametrize("code", ["NO_KEYPOINT", "ERROR", "NO_FILE", "INVALID_JSON"])
@pytest.mark.parametrize("strategy", [NETWORK, UPLOAD, FAST])
def test_scoring_verdicts_are_never_retried(code, strategy):
    error = AttemptError.from_outcome(UploadOutcome.failure(code, "verdict", "p1"))

    assert error.retryable is False
    assert should_retry(0, error, strategy) is False


@pytest.mark.parametrize("code", ["HTTP_ERROR", "UPLOAD_FAILED", "NETWORK_ERROR"])
def test_transport_outcomes_stay_retryable(code):
    error = AttemptError.from_outcome(UploadOutcome.failure(code, "transport", "p1"))

    assert error.retryable is None
    assert should_retry(0, error, NETWORK)
    assert should_retry(0, error, UPLOAD)
    assert should_retry(0, error, FAST)


def test_condition_accepts_guards_failing_condition():
    def explode(error):
        raise RuntimeError("condition broke")

    error = AttemptError(ErrorKind.NETWORK, code="UPLOAD_FAILED")
    assert condition_accepts(error, RetryStrategy(retry_condition=explode)) is False
    assert condition_accepts(error, UPLOAD) is True
