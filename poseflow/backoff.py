"""
PoseFlow Backoff Policy

Pure retry decisions for the upload pipeline:
- ErrorKind / AttemptError: the retry-layer error taxonomy
- RetryStrategy: immutable, validated backoff configuration
- StrategyPreset: the closed set of named strategies (NETWORK, UPLOAD, FAST)
- next_delay() / should_retry(): stateless policy functions

Delay formula:
    delay = min(base × factor^attempt, max_delay)
    jitter: delay ± 25%, floored at 0.5 × base
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional

import aiohttp

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class ErrorKind(Enum):
    """Retry-layer error classes."""
    NETWORK = auto()
    SERVER = auto()
    TIMEOUT = auto()
    USER_ABORT = auto()
    QUOTA_EXCEEDED = auto()
    INVALID_PARAMS = auto()


# Outcome codes produced by the scoring backend / upload primitive
CODE_SUCCESS = "SUCCESS"
CODE_NO_KEYPOINT = "NO_KEYPOINT"
CODE_ERROR = "ERROR"
CODE_NO_FILE = "NO_FILE"
CODE_HTTP_ERROR = "HTTP_ERROR"
CODE_INVALID_JSON = "INVALID_JSON"
CODE_UPLOAD_FAILED = "UPLOAD_FAILED"
CODE_ABORTED = "ABORTED"
CODE_NETWORK_ERROR = "NETWORK_ERROR"
CODE_TIMEOUT = "TIMEOUT"
CODE_USER_ABORT = "USER_ABORT"

_KIND_BY_CODE: dict[str, ErrorKind] = {
    CODE_UPLOAD_FAILED: ErrorKind.NETWORK,
    CODE_NETWORK_ERROR: ErrorKind.NETWORK,
    CODE_HTTP_ERROR: ErrorKind.SERVER,
    CODE_INVALID_JSON: ErrorKind.SERVER,
    CODE_ERROR: ErrorKind.SERVER,
    CODE_TIMEOUT: ErrorKind.TIMEOUT,
    CODE_ABORTED: ErrorKind.USER_ABORT,
    CODE_USER_ABORT: ErrorKind.USER_ABORT,
    CODE_NO_KEYPOINT: ErrorKind.INVALID_PARAMS,
    CODE_NO_FILE: ErrorKind.INVALID_PARAMS,
}

# Scoring-service verdicts: returned as results, never retried
BUSINESS_CODES = frozenset({CODE_NO_KEYPOINT, CODE_ERROR, CODE_NO_FILE, CODE_INVALID_JSON})


class AttemptError(Exception):
    """
    A single failed attempt, tagged for the retry policy.

    Args:
        kind: Error class (see ErrorKind)
        message: Human readable description
        code: Optional machine code (outcome code or transport code)
        was_aborted: True if the attempt was cancelled by the caller
        retryable: Optional explicit hint; False stops FAST and NETWORK retries
        outcome: Structured upload outcome this error was derived from
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        code: Optional[str] = None,
        was_aborted: bool = False,
        retryable: Optional[bool] = None,
        outcome: Any = None,
    ) -> None:
        super().__init__(message or kind.name)
        self.kind = kind
        self.code = code
        self.message = message or kind.name
        self.was_aborted = was_aborted or kind is ErrorKind.USER_ABORT
        self.retryable = retryable
        self.outcome = outcome

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.name}, code={self.code!r}, message={self.message!r})"

    @property
    def is_abort(self) -> bool:
        return self.was_aborted or self.kind is ErrorKind.USER_ABORT or self.code == CODE_USER_ABORT

    @classmethod
    def from_exception(cls, exc: BaseException) -> "AttemptError":
        """Classify an arbitrary exception; AttemptErrors pass through unchanged."""
        if isinstance(exc, AttemptError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            err = cls(ErrorKind.TIMEOUT, str(exc) or "Timeout", code=CODE_TIMEOUT)
        elif isinstance(exc, (aiohttp.ClientError, ConnectionError, OSError)):
            err = cls(ErrorKind.NETWORK, f"Connection Error: {exc}", code=CODE_NETWORK_ERROR)
        elif isinstance(exc, (ValueError, TypeError)):
            err = cls(ErrorKind.INVALID_PARAMS, str(exc))
        else:
            err = cls(ErrorKind.SERVER, f"{type(exc).__name__}: {exc}")
        err.__cause__ = exc
        return err

    @classmethod
    def from_outcome(cls, outcome: Any) -> "AttemptError":
        """Build the error that a non-success upload outcome stands for."""
        code = getattr(outcome, "code", None) or CODE_ERROR
        was_aborted = bool(getattr(outcome, "was_aborted", False)) or code == CODE_ABORTED
        kind = ErrorKind.USER_ABORT if was_aborted else _KIND_BY_CODE.get(code, ErrorKind.SERVER)
        msg = getattr(outcome, "msg", None) or code
        retryable = False if code in BUSINESS_CODES else None
        return cls(kind, msg, code=code, was_aborted=was_aborted, retryable=retryable, outcome=outcome)


# =============================================================================
# STRATEGY CONFIGURATION
# =============================================================================

RetryCondition = Callable[[AttemptError], bool]


def _always(error: AttemptError) -> bool:
    return True


@dataclass(frozen=True)
class RetryStrategy:
    """
    Immutable backoff configuration.

    Delays are in milliseconds. Validated on construction; use replace()
    to derive a modified copy.
    """
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10_000
    backoff_factor: float = 2.0
    jitter: bool = True
    retry_condition: RetryCondition = _always

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_ms <= 0:
            raise ValueError(f"base_delay_ms must be > 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        if self.backoff_factor <= 1:
            raise ValueError(f"backoff_factor must be > 1, got {self.backoff_factor}")
        if not callable(self.retry_condition):
            raise ValueError("retry_condition must be callable")

    def replace(self, **changes: Any) -> "RetryStrategy":
        return dataclasses.replace(self, **changes)


def _network_condition(error: AttemptError) -> bool:
    if error.retryable is False:
        return False
    if error.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER):
        return True
    return error.code in (CODE_NETWORK_ERROR, CODE_TIMEOUT, CODE_HTTP_ERROR)


def _upload_condition(error: AttemptError) -> bool:
    # Never retry a cancelled upload
    if error.is_abort:
        return False
    return error.code in (CODE_UPLOAD_FAILED, CODE_HTTP_ERROR, CODE_NETWORK_ERROR)


def _fast_condition(error: AttemptError) -> bool:
    return error.retryable is not False


class StrategyPreset(Enum):
    """Named strategies."""
    NETWORK = auto()
    UPLOAD = auto()
    FAST = auto()


NETWORK = RetryStrategy(
    max_retries=3,
    base_delay_ms=1000,
    max_delay_ms=10_000,
    backoff_factor=2.0,
    retry_condition=_network_condition,
)

UPLOAD = RetryStrategy(
    max_retries=2,
    base_delay_ms=2000,
    max_delay_ms=15_000,
    backoff_factor=2.5,
    retry_condition=_upload_condition,
)

FAST = RetryStrategy(
    max_retries=2,
    base_delay_ms=500,
    max_delay_ms=2000,
    backoff_factor=2.0,
    retry_condition=_fast_condition,
)

STRATEGIES: dict[StrategyPreset, RetryStrategy] = {
    StrategyPreset.NETWORK: NETWORK,
    StrategyPreset.UPLOAD: UPLOAD,
    StrategyPreset.FAST: FAST,
}


def get_strategy(name: StrategyPreset | str) -> RetryStrategy:
    """
    Resolve a preset by enum member or (case-insensitive) name.

    Raises:
        ValueError: If the name is not a known preset
    """
    if isinstance(name, StrategyPreset):
        return STRATEGIES[name]
    try:
        preset = StrategyPreset[str(name).strip().upper()]
    except KeyError:
        known = ", ".join(p.name for p in StrategyPreset)
        raise ValueError(f"Unknown retry strategy '{name}'. Known: {known}") from None
    return STRATEGIES[preset]


# =============================================================================
# POLICY FUNCTIONS
# =============================================================================

def next_delay(attempt_index: int, strategy: RetryStrategy, rng: Any = None) -> float:
    """
    Delay in milliseconds before the attempt following `attempt_index`.

    Args:
        attempt_index: Zero-based index of the attempt that just failed
        strategy: Backoff configuration
        rng: Object with a random() method; defaults to the random module

    Returns:
        Delay in milliseconds
    """
    delay = min(strategy.base_delay_ms * strategy.backoff_factor ** attempt_index, strategy.max_delay_ms)
    if strategy.jitter:
        rand = (rng or random).random()
        delay += (rand - 0.5) * 2 * (delay * 0.25)
        delay = max(delay, strategy.base_delay_ms * 0.5)
    return delay


def should_retry(attempt_index: int, error: AttemptError, strategy: RetryStrategy) -> bool:
    """Whether a failed attempt `attempt_index` may be followed by another one."""
    if attempt_index >= strategy.max_retries:
        return False
    if isinstance(error, AttemptError) and error.is_abort:
        return False
    return condition_accepts(error, strategy)


def condition_accepts(error: AttemptError, strategy: RetryStrategy) -> bool:
    """strategy.retry_condition(error); a condition that raises counts as False."""
    try:
        return bool(strategy.retry_condition(error))
    except Exception:
        logger.exception("retry_condition raised for %r; not retrying", error)
        return False
