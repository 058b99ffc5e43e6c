"""
PoseFlow Single Upload Module

The "send one file, get one scored JSON response" primitive.

This module is used by the scheduler and batch runner and provides:
- UploadOutcome: structured result of one upload (never an exception for
  business or network failures)
- UploadHandle: an in-flight upload with wait(), abort() and on_progress()
- PoseScoringClient: aiohttp implementation posting frames to the scoring API
- load_input_file(): frame-list loader (parquet, csv, excel)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextvars import ContextVar
from dataclasses import dataclass, field
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Coroutine, Optional

import aiohttp
import polars as pl

from .backoff import (
    CODE_ABORTED,
    CODE_ERROR,
    CODE_HTTP_ERROR,
    CODE_INVALID_JSON,
    CODE_NO_FILE,
    CODE_NO_KEYPOINT,
    CODE_SUCCESS,
    CODE_UPLOAD_FAILED,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.yogasmart.cn/api/detect-pose-file"

# Per-upload progress context for aiohttp tracing
PROGRESS_CTX: ContextVar[dict | None] = ContextVar("PROGRESS_CTX", default=None)


# =============================================================================
# OUTCOME
# =============================================================================

@dataclass
class UploadOutcome:
    """Result of one upload, as reported by the scoring backend."""
    score: float = 0.0
    code: str = CODE_SUCCESS
    skeleton_url: Optional[str] = None
    pose_id: Optional[str] = None
    msg: Optional[str] = None
    was_aborted: bool = False
    keypoints: list = field(default_factory=list)
    label: str = "unknown"
    suggestion: str = ""
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.code == CODE_SUCCESS

    @classmethod
    def failure(cls, code: str, msg: str, pose_id: Optional[str], **extra: Any) -> "UploadOutcome":
        return cls(score=0.0, code=code, msg=msg, pose_id=pose_id, **extra)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "code": self.code,
            "skeletonUrl": self.skeleton_url,
            "poseId": self.pose_id,
            "msg": self.msg,
            "label": self.label,
            "suggestion": self.suggestion,
        }


def _as_score(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_scoring_response(status: int, body: str, pose_id: Optional[str]) -> UploadOutcome:
    """
    Map an HTTP response from the scoring API to an UploadOutcome.

    Args:
        status: HTTP status code
        body: Raw response text
        pose_id: Pose id sent with the request (used when the body omits it)
    """
    try:
        data = json.loads(body) if body else None
    except ValueError:
        data = None
    if data is not None and not isinstance(data, dict):
        data = None

    if status != 200:
        if data and data.get("code"):
            return UploadOutcome(
                score=_as_score(data.get("score")),
                code=str(data["code"]),
                skeleton_url=data.get("skeletonUrl"),
                pose_id=data.get("poseId") or pose_id,
                msg=data.get("msg") or f"HTTP {status}",
                status_code=status,
            )
        try:
            phrase = HTTPStatus(status).phrase
        except ValueError:
            phrase = "Unknown"
        return UploadOutcome.failure(CODE_HTTP_ERROR, f"HTTP {status}: {phrase}", pose_id, status_code=status)

    if data is None:
        return UploadOutcome.failure(CODE_INVALID_JSON, "Invalid JSON response", pose_id, status_code=status)

    code = data.get("code") or CODE_SUCCESS
    pid = data.get("poseId") or pose_id

    if code == CODE_NO_KEYPOINT:
        return UploadOutcome(
            score=0.0,
            code=CODE_NO_KEYPOINT,
            pose_id=pid,
            msg=data.get("msg"),
            suggestion=data.get("msg") or "No pose keypoints detected",
            status_code=status,
        )

    if code in (CODE_ERROR, CODE_NO_FILE):
        return UploadOutcome(
            score=_as_score(data.get("score")),
            code=code,
            skeleton_url=data.get("skeletonUrl"),
            pose_id=pid,
            msg=data.get("msg"),
            suggestion=data.get("msg") or "",
            status_code=status,
        )

    return UploadOutcome(
        score=_as_score(data.get("score")),
        code=code,
        skeleton_url=data.get("skeletonUrl"),
        pose_id=pid,
        msg=data.get("msg"),
        keypoints=list(data.get("keypoints") or []),
        label=data.get("label") or "unknown",
        suggestion=data.get("suggestion") or "",
        status_code=status,
    )


# =============================================================================
# HANDLE
# =============================================================================

class UploadHandle:
    """
    An in-flight upload.

    Call start() with the coroutine performing the request. wait() always
    resolves to an UploadOutcome; after abort() it resolves to ABORTED.
    """

    def __init__(self, pose_id: Optional[str] = None) -> None:
        self.pose_id = pose_id
        self._task: Optional[asyncio.Task] = None
        self._aborted = False
        self._progress_cbs: list[Callable[[float], Any]] = []

    def start(self, coro: Coroutine[Any, Any, UploadOutcome]) -> "UploadHandle":
        self._task = asyncio.ensure_future(coro)
        return self

    @property
    def aborted(self) -> bool:
        return self._aborted

    def on_progress(self, callback: Callable[[float], Any]) -> None:
        self._progress_cbs.append(callback)

    def report_progress(self, percent: float) -> None:
        percent = max(0.0, min(100.0, percent))
        for cb in list(self._progress_cbs):
            try:
                cb(percent)
            except Exception:
                logger.exception("Progress callback failed")

    def abort(self) -> None:
        if self._task is not None and not self._task.done():
            self._aborted = True
            self._task.cancel()

    def _aborted_outcome(self) -> UploadOutcome:
        return UploadOutcome.failure(CODE_ABORTED, "Upload cancelled by user", self.pose_id, was_aborted=True)

    async def wait(self) -> UploadOutcome:
        if self._task is None:
            raise RuntimeError("UploadHandle.wait() called before start()")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._aborted and self._task.cancelled():
                return self._aborted_outcome()
            raise


UploadFn = Callable[[str, Optional[str]], UploadHandle]


# =============================================================================
# AIOHTTP TRACING (UPLOAD PROGRESS)
# =============================================================================

def build_trace_config() -> aiohttp.TraceConfig:
    """
    Build aiohttp trace config reporting request body progress.

    Progress is bytes sent relative to the file size, capped at 100.
    """
    trace = aiohttp.TraceConfig()

    async def on_request_chunk_sent(session, ctx, params):
        d = PROGRESS_CTX.get()
        if d is None:
            return
        d["sent"] += len(params.chunk)
        total = d["total"] or 1
        d["handle"].report_progress(min(100.0, d["sent"] * 100.0 / total))

    trace.on_request_chunk_sent.append(on_request_chunk_sent)
    return trace


# =============================================================================
# CLIENT
# =============================================================================

class PoseScoringClient:
    """
    Upload frames to the pose scoring endpoint.

    The session should be created with trace_configs=[build_trace_config()]
    for progress reporting.

    Args:
        session: aiohttp ClientSession
        endpoint_url: Scoring endpoint (multipart POST: file + poseId)
        timeout_sec: Per-request timeout
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        endpoint_url: str = DEFAULT_ENDPOINT,
        timeout_sec: float = 60.0,
    ) -> None:
        self.session = session
        self.endpoint_url = endpoint_url
        self.timeout_sec = timeout_sec

    def upload(self, file_path: str, pose_id: Optional[str]) -> UploadHandle:
        handle = UploadHandle(pose_id)
        return handle.start(self._post(handle, file_path, pose_id))

    __call__ = upload

    async def _post(self, handle: UploadHandle, file_path: str, pose_id: Optional[str]) -> UploadOutcome:
        try:
            content = Path(file_path).read_bytes()
        except OSError as e:
            logger.error("Cannot read %s: %s", file_path, e)
            return UploadOutcome.failure(CODE_UPLOAD_FAILED, f"Upload failed: {e}", pose_id)

        form = aiohttp.FormData()
        form.add_field("file", content, filename=os.path.basename(file_path))
        if pose_id is not None:
            form.add_field("poseId", str(pose_id))

        progress_token = PROGRESS_CTX.set({"sent": 0, "total": len(content), "handle": handle})
        handle.report_progress(0)
        logger.debug("POST %s (%d bytes, poseId=%s)", self.endpoint_url, len(content), pose_id)

        try:
            async with self.session.post(
                self.endpoint_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
            ) as response:
                body = await response.text()
                status = response.status
        except asyncio.TimeoutError:
            return UploadOutcome.failure(CODE_UPLOAD_FAILED, "Upload failed: Request Timeout", pose_id)
        except aiohttp.ClientError as e:
            return UploadOutcome.failure(CODE_UPLOAD_FAILED, f"Upload failed: Connection Error: {e}", pose_id)
        finally:
            PROGRESS_CTX.reset(progress_token)

        handle.report_progress(100)
        outcome = parse_scoring_response(status, body, pose_id)
        if outcome.code != CODE_SUCCESS:
            logger.info("Upload of %s returned %s: %s", file_path, outcome.code, outcome.msg)
        return outcome


# =============================================================================
# INPUT LOADING
# =============================================================================

def load_input_file(file_path: str, file_format: Optional[str] = None) -> pl.DataFrame:
    """
    Load a frame list in various formats using Polars.

    Args:
        file_path: Path to input file
        file_format: Optional format hint ('parquet', 'csv', 'excel').
                    If None, inferred from file extension

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If format is unsupported
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Input file {file_path} not found")

    if file_format is None:
        if file_path.endswith(".parquet"):
            file_format = "parquet"
        elif file_path.endswith(".csv") or file_path.endswith(".txt"):
            file_format = "csv"
        elif file_path.endswith(".xlsx") or file_path.endswith(".xls"):
            file_format = "excel"
        else:
            raise ValueError(f"Could not determine file format from extension: {file_path}")

    if file_format == "parquet":
        return pl.read_parquet(file_path)
    elif file_format == "csv":
        return pl.read_csv(file_path)
    elif file_format == "excel":
        return pl.read_excel(file_path)
    raise ValueError(f"Unsupported file format: {file_format}")
