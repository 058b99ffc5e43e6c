# tests/conftest.py
import asyncio

import pytest

from poseflow.backoff import RetryStrategy
from poseflow.single_upload import UploadHandle, UploadOutcome


def ok(score, pose_id="warrior_2"):
    return UploadOutcome(score=score, code="SUCCESS", pose_id=pose_id)


def coded(code, pose_id="warrior_2"):
    return UploadOutcome.failure(code, code.lower(), pose_id)


class StubUploader:
    """
    Upload primitive with scripted outcomes.

    script maps file_path -> list of outcomes (or exceptions) returned on
    successive calls; the last entry repeats. Unscripted paths score 80.
    """

    def __init__(self, script=None, delays=None, gate=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delays = delays or {}
        self.gate = gate
        self.calls = []
        self.handles = []
        self.inflight = 0
        self.max_inflight = 0

    def __call__(self, file_path, pose_id):
        self.calls.append(file_path)
        handle = UploadHandle(pose_id)
        self.handles.append(handle)
        return handle.start(self._respond(handle, file_path, pose_id))

    def calls_for(self, file_path):
        return sum(1 for c in self.calls if c == file_path)

    async def _respond(self, handle, file_path, pose_id):
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            handle.report_progress(50)
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delays.get(file_path, 0))
            steps = self.script.get(file_path)
            if not steps:
                return ok(80, pose_id)
            item = steps.pop(0) if len(steps) > 1 else steps[0]
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            self.inflight -= 1


def quick(base, **changes):
    """Copy of a preset with millisecond-scale, jitter-free delays."""
    params = {"base_delay_ms": 1, "max_delay_ms": 2, "jitter": False}
    params.update(changes)
    return base.replace(**params)


@pytest.fixture
def permissive():
    return RetryStrategy(max_retries=3, base_delay_ms=1, max_delay_ms=4, backoff_factor=2, jitter=False)
