"""
PoseFlow Batch Aggregator

Fans a batch of frame uploads out through an UploadScheduler and reduces
the per-frame outcomes into one BatchSummary.

- Earlier frames get higher priority under contention
- All-settled semantics: one frame's failure never aborts the others,
  unless skip_failed_frames is False
- Valid frame: outcome code SUCCESS and score > 0
- average_score: half-up rounded mean over valid frames (0 if none)
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from .backoff import CODE_NO_KEYPOINT, CODE_SUCCESS, UPLOAD, AttemptError, RetryStrategy
from .registry import EVENT_UPDATED, TaskStatus, UploadTask
from .retry import CancelToken, retry_with_backoff
from .scheduler import UploadScheduler, attempt_upload
from .single_upload import UploadFn, UploadOutcome

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class UploadJob:
    """One frame to upload and score."""
    file_path: str
    pose_id: Optional[str] = None


@dataclass(frozen=True)
class BatchOptions:
    """Batch configuration."""
    concurrency: int = 3
    enable_retry: bool = True
    strategy: RetryStrategy = UPLOAD
    timeout_sec: Optional[float] = 60.0
    skip_failed_frames: bool = True
    cleanup_delay_sec: float = 10.0
    # on_progress({"completed", "total", "progress", "current_result"})
    on_progress: Optional[Callable[[dict], Any]] = None
    # on_frame_complete(outcome, completed, total)
    on_frame_complete: Optional[Callable[[UploadOutcome, int, int], Any]] = None


@dataclass
class FrameResult:
    """Settled result of one job, successful or not."""
    index: int
    file_path: str
    pose_id: Optional[str]
    outcome: Optional[UploadOutcome] = None
    error: Optional[BaseException] = None
    duration_sec: Optional[float] = None

    @property
    def code(self) -> str:
        if self.outcome is not None:
            return self.outcome.code
        if isinstance(self.error, AttemptError):
            return self.error.code or self.error.kind.name
        return type(self.error).__name__ if self.error is not None else "UNKNOWN"

    @property
    def score(self) -> float:
        return self.outcome.score if self.outcome is not None else 0.0

    @property
    def valid(self) -> bool:
        return _is_valid(self.outcome)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "file_path": self.file_path,
            "pose_id": self.pose_id,
            "code": self.code,
            "score": float(self.score),
            "valid": self.valid,
            "skeleton_url": self.outcome.skeleton_url if self.outcome is not None else None,
            "error": str(self.error) if self.error is not None else None,
            "duration_sec": self.duration_sec,
        }


@dataclass(frozen=True)
class ScoreSummary:
    average_score: int
    valid_frames: int
    total_frames: int
    stats: dict
    valid_scores: list
    message: str


@dataclass(frozen=True)
class BatchSummary:
    """Aggregate over a finished batch; raw_results are ordered by job index."""
    average_score: int
    valid_frames: int
    total_frames: int
    processed_frames: int
    failed_frames: int
    stats: dict
    message: str
    valid_scores: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    raw_results: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "average_score": self.average_score,
            "valid_frames": self.valid_frames,
            "total_frames": self.total_frames,
            "processed_frames": self.processed_frames,
            "failed_frames": self.failed_frames,
            "stats": dict(self.stats),
            "message": self.message,
            "errors": [r.to_dict() for r in self.errors],
            "raw_results": [r.to_dict() for r in self.raw_results],
        }


# =============================================================================
# SCORE REDUCTION
# =============================================================================

def _is_valid(outcome: Optional[UploadOutcome]) -> bool:
    return outcome is not None and outcome.code == CODE_SUCCESS and outcome.score > 0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_scores(outcomes: Sequence[Optional[UploadOutcome]]) -> ScoreSummary:
    """
    Reduce per-frame outcomes to an average score.

    Missing outcomes (failed uploads) count towards the total but are never
    valid.
    """
    valid = [o for o in outcomes if _is_valid(o)]
    stats = {
        "total": len(outcomes),
        "valid": len(valid),
        "failed": len(outcomes) - len(valid),
        "no_keypoint": sum(1 for o in outcomes if o is not None and o.code == CODE_NO_KEYPOINT),
    }
    logger.info("Frame statistics: %s", stats)

    if not valid:
        return ScoreSummary(0, 0, len(outcomes), stats, [], "No valid pose detected")

    average = _round_half_up(sum(o.score for o in valid) / len(valid))
    return ScoreSummary(
        average_score=average,
        valid_frames=len(valid),
        total_frames=len(outcomes),
        stats=stats,
        valid_scores=[o.score for o in valid],
        message=f"Analyzed {len(valid)}/{len(outcomes)} frames",
    )


# =============================================================================
# BATCH EXECUTION
# =============================================================================

JobLike = Union[UploadJob, Mapping[str, Any]]


def _as_job(job: JobLike) -> UploadJob:
    if isinstance(job, UploadJob):
        return job
    return UploadJob(file_path=str(job["file_path"]), pose_id=job.get("pose_id"))


def _frame_task_id(index: int) -> str:
    return f"frame_{index}"


def _safe_call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Batch callback failed")


async def run_batch(
    upload_fn: UploadFn,
    jobs: Iterable[JobLike],
    options: Optional[BatchOptions] = None,
) -> BatchSummary:
    """
    Upload and score every job, then aggregate.

    Args:
        upload_fn: Upload primitive
        jobs: UploadJob values or mappings with file_path / pose_id
        options: Batch configuration

    Raises:
        AttemptError: The first failure, only when skip_failed_frames is False
    """
    options = options or BatchOptions()
    job_list = [_as_job(j) for j in jobs]
    total = len(job_list)
    index_of = {_frame_task_id(i): i for i in range(total)}
    completed = 0
    durations: dict[int, float] = {}

    logger.info("Processing %d frames, concurrency: %d", total, options.concurrency)

    scheduler = UploadScheduler(
        upload_fn,
        max_concurrent=options.concurrency,
        strategy=options.strategy,
        enable_retry=options.enable_retry,
        timeout_sec=options.timeout_sec,
        cleanup_delay_sec=options.cleanup_delay_sec,
    )

    def listener(task_id: str, task: UploadTask, event: str, extra: dict) -> None:
        nonlocal completed
        if event != EVENT_UPDATED or task_id not in index_of or not task.status.terminal:
            return
        completed += 1
        durations[index_of[task_id]] = task.duration_sec
        if task.status is TaskStatus.COMPLETED:
            _safe_call(options.on_frame_complete, task.result, completed, total)
        _safe_call(options.on_progress, {
            "completed": completed,
            "total": total,
            "progress": round(completed / total * 100) if total else 100,
            "current_result": task.result,
        })

    unsubscribe = scheduler.registry.subscribe(listener)
    try:
        settled = await asyncio.gather(
            *(
                scheduler.add_task(
                    _frame_task_id(i), job.file_path, job.pose_id,
                    priority=total - i,
                    skip_retry=not options.enable_retry,
                )
                for i, job in enumerate(job_list)
            ),
            return_exceptions=options.skip_failed_frames,
        )
    finally:
        unsubscribe()
        scheduler.close()

    results: list[FrameResult] = []
    for i, (job, value) in enumerate(zip(job_list, settled)):
        if isinstance(value, asyncio.CancelledError):
            raise value
        if isinstance(value, BaseException):
            frame = FrameResult(i, job.file_path, job.pose_id, error=value)
        else:
            frame = FrameResult(i, job.file_path, job.pose_id, outcome=value)
        frame.duration_sec = durations.get(i)
        results.append(frame)

    scores = summarize_scores([r.outcome for r in results])
    errors = [r for r in results if r.error is not None]
    if errors:
        codes = Counter(r.code for r in errors)
        logger.warning("%d/%d frames failed: %s", len(errors), total, dict(codes))

    return BatchSummary(
        average_score=scores.average_score,
        valid_frames=scores.valid_frames,
        total_frames=total,
        processed_frames=total - len(errors),
        failed_frames=len(errors),
        stats=scores.stats,
        message=scores.message,
        valid_scores=scores.valid_scores,
        errors=errors,
        raw_results=results,
    )


async def batch_process_frames(
    upload_fn: UploadFn,
    frame_paths: Sequence[str],
    pose_id: Optional[str],
    options: Optional[BatchOptions] = None,
) -> BatchSummary:
    """run_batch() for frames that all belong to one pose."""
    return await run_batch(upload_fn, [UploadJob(p, pose_id) for p in frame_paths], options)


async def upload_with_retry(
    upload_fn: UploadFn,
    file_path: str,
    pose_id: Optional[str],
    strategy: RetryStrategy = UPLOAD,
    timeout_sec: Optional[float] = 60.0,
    token: Optional[CancelToken] = None,
) -> UploadOutcome:
    """Upload one file with retries, without a scheduler."""

    async def attempt(tok: CancelToken) -> UploadOutcome:
        return await attempt_upload(
            upload_fn, file_path, pose_id,
            strategy=strategy, timeout_sec=timeout_sec, token=tok,
        )

    return await retry_with_backoff(attempt, strategy, token=token)
