"""
Pytest configuration and fakes for the proctoring tests
"""

import asyncio
import threading
import time
from types import SimpleNamespace
from typing import List, Optional

import numpy as np
import pytest

from proctor.config import Settings
from proctor.models.schemas import AuditEvent, Severity
from proctor.monitoring.gaze_classifier import GazeClassifier


def make_point(x, y, z=0.0):
    return SimpleNamespace(x=x, y=y, z=z)


def make_face(left=(0.4, 0.4), right=(0.6, 0.4), nose=(0.5, 0.5), count=478):
    """A landmark set with the eyes and nose tip placed at the given coordinates."""
    keypoints = [make_point(0.0, 0.0) for _ in range(count)]
    indices = {33: left, 468: right, 4: nose}
    if count <= 468:
        indices = {33: left, 362: right, 4: nose}
    for index, (x, y) in indices.items():
        if index < count:
            keypoints[index] = make_point(x, y)
    return keypoints


LOOKING_FORWARD = make_face()
LOOKING_AWAY = make_face(left=(0.2, 0.3), right=(0.4, 0.45), nose=(0.6, 0.5))


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


class FakeVideoStream:
    """Delivers nothing for the first frames_after reads, like a camera still warming up."""

    def __init__(self, frame: Optional[np.ndarray] = None, frames_after: int = 0):
        self.frame = frame
        self.frames_after = frames_after
        self.released = False
        self.reads = 0

    def read(self):
        self.reads += 1
        if self.released or self.reads <= self.frames_after:
            return None
        return self.frame

    def release(self):
        self.released = True


class FakeMediaDevice:
    def __init__(
        self,
        error: Optional[Exception] = None,
        frame: Optional[np.ndarray] = None,
        deliver_frames=True,
        frames_after: int = 0,
    ):
        self.error = error
        self.frames_after = frames_after
        self.frame = frame if frame is not None else np.zeros((480, 640, 3), dtype=np.uint8)
        self.deliver_frames = deliver_frames
        self.opened: List[FakeVideoStream] = []

    def open(self, constraints):
        if self.error is not None:
            raise self.error
        stream = FakeVideoStream(self.frame if self.deliver_frames else None, frames_after=self.frames_after)
        self.opened.append(stream)
        return stream


class FakeDetector:
    """Returns scripted landmark sets; the last entry repeats once the script runs out."""

    def __init__(self, script=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.script = list(script) if script is not None else [[LOOKING_FORWARD]]
        self.error = error
        self.delay = delay
        self.calls = 0
        self.disposed = False
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def estimate_faces(self, frame):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            self.calls += 1
            if self.error is not None:
                raise self.error
            index = min(self.calls - 1, len(self.script) - 1)
            return self.script[index]
        finally:
            with self._lock:
                self.active -= 1

    def dispose(self):
        self.disposed = True


class RecordingNotifier:
    def __init__(self, calls=None):
        self.messages = []
        self.redirects = []
        self.calls = calls if calls is not None else []
        self.connections = set()

    async def notify(self, message: str, severity: Severity):
        self.messages.append((message, severity))
        self.calls.append(("notify", message))

    async def redirect(self, location: str):
        self.redirects.append(location)
        self.calls.append(("redirect", location))

    async def close_all(self):
        pass


class RecordingAudit:
    """Records audit calls. fail makes every call raise; failing names the methods that raise."""

    def __init__(self, calls=None, fail: bool = False, failing=()):
        self.events: List[AuditEvent] = []
        self.violations = []
        self.calls = calls if calls is not None else []
        self.failing = {"log_event", "log_violation"} if fail else set(failing)

    async def log_event(self, event: AuditEvent):
        self.calls.append(("log_event", event.event_type.value))
        if "log_event" in self.failing:
            raise RuntimeError("audit service unavailable")
        self.events.append(event)

    async def log_violation(self, user_id: str, reason: str):
        self.calls.append(("log_violation", reason))
        if "log_violation" in self.failing:
            raise RuntimeError("audit service unavailable")
        self.violations.append((user_id, reason))


class RecordingAuth:
    def __init__(self, user_id: Optional[str] = "user-1", calls=None):
        self._user_id = user_id
        self.signed_out = False
        self.calls = calls if calls is not None else []

    @property
    def user_id(self):
        return self._user_id

    async def sign_out(self):
        self.signed_out = True
        self.calls.append(("sign_out", self._user_id))


@pytest.fixture(autouse=True)
def reset_shared_detector():
    GazeClassifier.dispose()
    yield
    GazeClassifier.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def settings():
    return Settings(
        CAPTURE_FPS=200,
        CAPTURE_READY_TIMEOUT=0.2,
        TERMINATION_DELAY_MS=50,
        AUDIT_SERVICE_URL=None,
    )
