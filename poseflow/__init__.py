"""PoseFlow: upload, retry and aggregate pose-scoring frames."""

from .backoff import (
    FAST,
    NETWORK,
    STRATEGIES,
    UPLOAD,
    AttemptError,
    ErrorKind,
    RetryStrategy,
    StrategyPreset,
    get_strategy,
    next_delay,
    should_retry,
)
from .batch import (
    BatchOptions,
    BatchSummary,
    FrameResult,
    UploadJob,
    batch_process_frames,
    run_batch,
    summarize_scores,
    upload_with_retry,
)
from .registry import DuplicateTaskError, TaskRegistry, TaskStatus, UploadTask
from .retry import (
    CancelToken,
    batch_retry,
    cancellable_retry,
    retry_when,
    retry_with_backoff,
    retry_with_timeout,
    with_timeout,
)
from .scheduler import TaskCancelledError, UploadScheduler
from .single_upload import PoseScoringClient, UploadHandle, UploadOutcome

__version__ = "1.0.0"

__all__ = [
    "AttemptError",
    "BatchOptions",
    "BatchSummary",
    "CancelToken",
    "DuplicateTaskError",
    "ErrorKind",
    "FAST",
    "FrameResult",
    "NETWORK",
    "PoseScoringClient",
    "RetryStrategy",
    "STRATEGIES",
    "StrategyPreset",
    "TaskCancelledError",
    "TaskRegistry",
    "TaskStatus",
    "UPLOAD",
    "UploadHandle",
    "UploadJob",
    "UploadOutcome",
    "UploadScheduler",
    "UploadTask",
    "batch_process_frames",
    "batch_retry",
    "cancellable_retry",
    "get_strategy",
    "next_delay",
    "retry_when",
    "retry_with_backoff",
    "retry_with_timeout",
    "run_batch",
    "should_retry",
    "summarize_scores",
    "upload_with_retry",
    "with_timeout",
]
