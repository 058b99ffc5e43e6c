"""
PoseFlow Task Registry

Lifecycle tracking for upload tasks.

State Machine:
    PENDING → UPLOADING → COMPLETED
                  ↓
                FAILED
    (any non-terminal) → CANCELLED

Terminal tasks are evicted from the live map after a grace period.
Listeners are notified synchronously: created → updated* → cleaned.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Forward-only ordering; terminal states share the last rank
_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.UPLOADING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
    TaskStatus.CANCELLED: 2,
}

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_RETRY = "retry"
EVENT_CLEANED = "cleaned"


class DuplicateTaskError(KeyError):
    """Raised when a task id is already live in the registry."""


@dataclass
class UploadTask:
    """One tracked upload-and-score task."""
    task_id: str
    file_path: Optional[str] = None
    pose_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 0
    progress: float = 0.0
    start_time: float = 0.0
    last_update: float = 0.0
    timeout_sec: Optional[float] = None
    retry_attempt: int = 0
    result: Any = None
    error: Optional[BaseException] = None
    cancel_fn: Optional[Callable[[], Any]] = None

    @property
    def duration_sec(self) -> float:
        return max(0.0, self.last_update - self.start_time)


Listener = Callable[[str, UploadTask, str, dict], Any]


class TaskRegistry:
    """
    Live map of upload tasks with observer notifications.

    Args:
        cleanup_delay_sec: Grace period before a terminal task is evicted
    """

    def __init__(self, cleanup_delay_sec: float = 10.0) -> None:
        self.cleanup_delay_sec = cleanup_delay_sec
        self._tasks: dict[str, UploadTask] = {}
        self._listeners: list[Listener] = []
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns the matching unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, task_id: str, event: str, **extra: Any) -> None:
        """Send `event` for a live task to all listeners."""
        task = self._tasks.get(task_id)
        if task is not None:
            self._emit(task_id, task, event, extra)

    def _emit(self, task_id: str, task: UploadTask, event: str, extra: dict) -> None:
        snapshot = copy.copy(task)
        for listener in list(self._listeners):
            try:
                listener(task_id, snapshot, event, extra)
            except Exception:
                logger.exception("Listener failed on %s event for task %s", event, task_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create(self, task_id: str, **fields: Any) -> UploadTask:
        """
        Register a new PENDING task.

        Raises:
            DuplicateTaskError: If `task_id` is already live
        """
        if task_id in self._tasks:
            raise DuplicateTaskError(task_id)
        now = time.time()
        task = UploadTask(task_id=task_id, start_time=now, last_update=now, **fields)
        task.status = TaskStatus.PENDING
        self._tasks[task_id] = task
        logger.debug("Task %s created (priority=%d)", task_id, task.priority)
        self._emit(task_id, task, EVENT_CREATED, {})
        return task

    def update(self, task_id: str, status: TaskStatus, **patch: Any) -> bool:
        """
        Move a task to `status` and apply `patch`.

        No-op (returns False) when the task is absent, already terminal, or
        the move would go backwards.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status.terminal:
            return False
        if _RANK[status] < _RANK[task.status]:
            logger.debug("Ignoring backward move %s → %s for %s", task.status.name, status.name, task_id)
            return False

        old_status = task.status
        task.status = status
        task.last_update = time.time()
        for name, value in patch.items():
            setattr(task, name, value)
        if status.terminal:
            task.cancel_fn = None

        self._emit(task_id, task, EVENT_UPDATED, {"old_status": old_status})

        if status.terminal:
            self._schedule_cleanup(task_id)
        return True

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a non-terminal task.

        Invokes the stored cancel_fn (which aborts any in-flight attempt),
        then marks the task CANCELLED. Returns False if the task is absent or
        already terminal.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status.terminal:
            return False

        cancel_fn = task.cancel_fn
        if cancel_fn is not None:
            try:
                cancel_fn()
            except Exception:
                logger.exception("cancel_fn failed for task %s", task_id)

        self.update(task_id, TaskStatus.CANCELLED)
        logger.info("Task cancelled: %s", task_id)
        return True

    def _schedule_cleanup(self, task_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; task %s stays until purge()", task_id)
            return
        previous = self._cleanup_handles.pop(task_id, None)
        if previous is not None:
            previous.cancel()
        self._cleanup_handles[task_id] = loop.call_later(self.cleanup_delay_sec, self._evict, task_id)

    def _evict(self, task_id: str) -> None:
        self._cleanup_handles.pop(task_id, None)
        task = self._tasks.get(task_id)
        if task is None or not task.status.terminal:
            return
        del self._tasks[task_id]
        logger.debug("Task %s cleaned up", task_id)
        self._emit(task_id, task, EVENT_CLEANED, {})

    def purge(self) -> int:
        """Evict every terminal task now; returns how many were removed."""
        terminal = [tid for tid, t in self._tasks.items() if t.status.terminal]
        for tid in terminal:
            handle = self._cleanup_handles.pop(tid, None)
            if handle is not None:
                handle.cancel()
            self._evict(tid)
        return len(terminal)

    def close(self) -> None:
        """Cancel pending evictions."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def get(self, task_id: str) -> Optional[UploadTask]:
        task = self._tasks.get(task_id)
        return copy.copy(task) if task is not None else None

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        task = self._tasks.get(task_id)
        return task.status if task is not None else None

    def get_all_tasks(self) -> list[UploadTask]:
        return [copy.copy(t) for t in self._tasks.values()]

    def get_stats(self) -> dict[str, int]:
        counts = Counter(t.status for t in self._tasks.values())
        stats = {"total": len(self._tasks)}
        for status in TaskStatus:
            stats[status.value] = counts.get(status, 0)
        return stats
