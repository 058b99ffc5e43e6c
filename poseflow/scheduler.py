"""
PoseFlow Upload Scheduler

Concurrency-limited admission of upload tasks.

Key Design Principles:
- At most `max_concurrent` jobs run at once; the rest wait in a queue
- Queue order: descending priority, then submission order
- Every job gets its own CancelToken; the token's cancel() is stored on the
  task so TaskRegistry.cancel() can stop retries and abort the upload
- A finished job (success, failure or cancellation) frees its slot and
  admits the best queued job
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .backoff import CODE_USER_ABORT, UPLOAD, AttemptError, ErrorKind, RetryStrategy, condition_accepts
from .registry import EVENT_RETRY, TaskRegistry, TaskStatus, UploadTask
from .retry import CancelToken, retry_with_backoff, with_timeout
from .single_upload import UploadFn, UploadOutcome

logger = logging.getLogger(__name__)

Job = Callable[[CancelToken], Awaitable[Any]]


class TaskCancelledError(AttemptError):
    """Raised to the submitter of a task that was cancelled."""

    def __init__(self, task_id: str) -> None:
        super().__init__(
            ErrorKind.USER_ABORT,
            f"Task {task_id} cancelled",
            code=CODE_USER_ABORT,
            was_aborted=True,
        )
        self.task_id = task_id


async def attempt_upload(
    upload_fn: UploadFn,
    file_path: str,
    pose_id: Optional[str],
    *,
    strategy: RetryStrategy,
    timeout_sec: Optional[float],
    token: CancelToken,
    on_progress: Optional[Callable[[float], Any]] = None,
) -> UploadOutcome:
    """
    One upload attempt through the primitive.

    The upload is bounded by `timeout_sec` and aborted when `token` is
    cancelled. A resolved non-success outcome is returned as a business
    result unless it was aborted, or `strategy` would retry it and it is not
    a scoring verdict (NO_KEYPOINT, ERROR, NO_FILE, INVALID_JSON); then the
    matching AttemptError is raised.
    """
    token.raise_if_cancelled()
    handle = upload_fn(file_path, pose_id)
    if on_progress is not None:
        handle.on_progress(on_progress)
    remove_hook = token.add_abort_hook(handle.abort)
    try:
        outcome = await with_timeout(handle.wait(), timeout_sec, abort=handle.abort)
    finally:
        remove_hook()

    token.raise_if_cancelled()
    if not outcome.ok:
        error = AttemptError.from_outcome(outcome)
        if error.is_abort:
            raise error
        if error.retryable is not False and condition_accepts(error, strategy):
            raise error
    return outcome


@dataclass(order=True)
class _QueueEntry:
    sort_key: tuple[int, int]
    task_id: str = field(compare=False)
    job: Job = field(compare=False)
    future: asyncio.Future = field(compare=False)


class UploadScheduler:
    """
    Admits upload jobs up to a concurrency bound.

    Args:
        upload_fn: Upload primitive, upload_fn(file_path, pose_id) -> UploadHandle
        max_concurrent: Maximum number of running jobs
        strategy: Retry strategy for add_task() uploads
        enable_retry: If False, add_task() uploads are attempted once
        timeout_sec: Default per-attempt upload timeout
        cleanup_delay_sec: Grace period before terminal tasks are evicted
        registry: Optional externally owned TaskRegistry
    """

    def __init__(
        self,
        upload_fn: Optional[UploadFn] = None,
        *,
        max_concurrent: int = 3,
        strategy: RetryStrategy = UPLOAD,
        enable_retry: bool = True,
        timeout_sec: Optional[float] = 60.0,
        cleanup_delay_sec: float = 10.0,
        registry: Optional[TaskRegistry] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.upload_fn = upload_fn
        self.max_concurrent = max_concurrent
        self.strategy = strategy
        self.enable_retry = enable_retry
        self.timeout_sec = timeout_sec
        self.registry = registry if registry is not None else TaskRegistry(cleanup_delay_sec)

        self._active = 0
        self._queue: list[_QueueEntry] = []
        self._seq = itertools.count()
        self._running: set[asyncio.Task] = set()
        self._closed = False

        logger.debug(
            "Scheduler initialized: max_concurrent=%d enable_retry=%s timeout=%s",
            max_concurrent, enable_retry, timeout_sec,
        )

    async def __aenter__(self) -> "UploadScheduler":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(self, task_id: str, job: Job, priority: int = 0, **fields: Any) -> Any:
        """
        Register `task_id` and run `job(token)` when capacity allows.

        Returns the job's result. Raises the job's error on failure and
        TaskCancelledError if the task is cancelled.

        Raises:
            DuplicateTaskError: If `task_id` is already live
        """
        if self._closed:
            raise RuntimeError("Scheduler is closed")
        self.registry.create(task_id, priority=priority, **fields)

        if self._active < self.max_concurrent:
            self._active += 1
            return await self._execute(task_id, job)

        future = asyncio.get_running_loop().create_future()
        entry = _QueueEntry((-priority, next(self._seq)), task_id, job, future)
        bisect.insort(self._queue, entry)
        future.add_done_callback(lambda fut: self._drop_abandoned(entry))
        logger.debug("Task %s queued (priority=%d, queue size=%d)", task_id, priority, len(self._queue))
        return await future

    def _drop_abandoned(self, entry: _QueueEntry) -> None:
        """Forget a queued entry whose submitter was cancelled."""
        if not entry.future.cancelled() or entry not in self._queue:
            return
        self._queue.remove(entry)
        self.registry.cancel(entry.task_id)
        logger.debug("Task %s dropped from queue, submitter went away", entry.task_id)

    async def _execute(self, task_id: str, job: Job) -> Any:
        """Run an admitted job; the caller has already taken the slot."""
        try:
            if self.registry.status_of(task_id) is not TaskStatus.PENDING:
                raise TaskCancelledError(task_id)

            token = CancelToken()
            self.registry.update(task_id, TaskStatus.UPLOADING, cancel_fn=token.cancel)
            try:
                result = await job(token)
            except asyncio.CancelledError:
                self.registry.cancel(task_id)
                raise
            except Exception as exc:
                if self.registry.status_of(task_id) is TaskStatus.CANCELLED:
                    raise TaskCancelledError(task_id) from exc
                logger.error("Task %s failed: %r", task_id, exc)
                self.registry.update(task_id, TaskStatus.FAILED, error=exc)
                raise

            if self.registry.status_of(task_id) is TaskStatus.CANCELLED:
                raise TaskCancelledError(task_id)
            self.registry.update(task_id, TaskStatus.COMPLETED, result=result, progress=100.0)
            return result
        finally:
            self._active -= 1
            self._process_queue()

    def _process_queue(self) -> None:
        while self._queue and self._active < self.max_concurrent:
            entry = self._queue.pop(0)
            if entry.future.done():
                # Submitter went away; nothing will read the result
                self.registry.cancel(entry.task_id)
                continue
            self._active += 1
            task = asyncio.ensure_future(self._run_queued(entry))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _run_queued(self, entry: _QueueEntry) -> None:
        try:
            result = await self._execute(entry.task_id, entry.job)
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as exc:
            if not entry.future.done():
                entry.future.set_exception(exc)
        else:
            if not entry.future.done():
                entry.future.set_result(result)

    # -------------------------------------------------------------------------
    # Upload jobs
    # -------------------------------------------------------------------------

    async def add_task(
        self,
        task_id: str,
        file_path: str,
        pose_id: Optional[str],
        priority: int = 0,
        timeout_sec: Optional[float] = None,
        skip_retry: bool = False,
    ) -> UploadOutcome:
        """Upload `file_path` for scoring as a scheduled, retried task."""
        if self.upload_fn is None:
            raise RuntimeError("add_task() needs an upload_fn")
        timeout = timeout_sec if timeout_sec is not None else self.timeout_sec
        job = self._upload_job(task_id, file_path, pose_id, timeout, skip_retry)
        logger.debug("Adding task %s (queue size=%d)", task_id, len(self._queue))
        return await self.submit(
            task_id, job, priority,
            file_path=file_path, pose_id=pose_id, timeout_sec=timeout,
        )

    def _upload_job(
        self,
        task_id: str,
        file_path: str,
        pose_id: Optional[str],
        timeout_sec: Optional[float],
        skip_retry: bool,
    ) -> Job:
        async def attempt(token: CancelToken) -> UploadOutcome:
            return await self._upload_once(task_id, file_path, pose_id, timeout_sec, token)

        def on_retry(attempt_no: int, error: AttemptError, delay_ms: float) -> None:
            logger.info("Task %s retry %d, delay %d ms", task_id, attempt_no, round(delay_ms))
            self.registry.update(task_id, TaskStatus.UPLOADING, retry_attempt=attempt_no, progress=0.0)
            self.registry.notify(task_id, EVENT_RETRY, attempt=attempt_no, error=error, delay_ms=delay_ms)

        async def job(token: CancelToken) -> UploadOutcome:
            if skip_retry or not self.enable_retry:
                return await attempt(token)
            return await retry_with_backoff(attempt, self.strategy, on_retry=on_retry, token=token)

        return job

    async def _upload_once(
        self,
        task_id: str,
        file_path: str,
        pose_id: Optional[str],
        timeout_sec: Optional[float],
        token: CancelToken,
    ) -> UploadOutcome:
        def on_progress(pct: float) -> None:
            self.registry.update(task_id, TaskStatus.UPLOADING, progress=pct)

        return await attempt_upload(
            self.upload_fn, file_path, pose_id,
            strategy=self.strategy,
            timeout_sec=timeout_sec,
            token=token,
            on_progress=on_progress,
        )

    # -------------------------------------------------------------------------
    # Cancellation and lifecycle
    # -------------------------------------------------------------------------

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a queued or running task.

        A queued task is dropped from the queue without ever starting.
        Returns False if the task is unknown or already terminal.
        """
        entry = None
        for i, queued in enumerate(self._queue):
            if queued.task_id == task_id:
                entry = self._queue.pop(i)
                break

        cancelled = self.registry.cancel(task_id)
        if entry is not None and not entry.future.done():
            entry.future.set_exception(TaskCancelledError(task_id))
        return cancelled

    def cancel_all(self) -> int:
        """Cancel every live task; returns how many were cancelled."""
        task_ids = [t.task_id for t in self.registry.get_all_tasks() if not t.status.terminal]
        if task_ids:
            logger.info("Cancelling %d tasks", len(task_ids))
        return sum(1 for tid in task_ids if self.cancel(tid))

    def close(self) -> None:
        """Cancel all work and stop registry timers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.cancel_all()
        self.registry.close()

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, int]:
        stats = self.registry.get_stats()
        stats["active"] = self._active
        stats["queued"] = len(self._queue)
        return stats

    def get_all_tasks(self) -> list[UploadTask]:
        return self.registry.get_all_tasks()
