import asyncio
import glob
import logging
import os
import re
import sys
from typing import Callable, Dict, List, Optional, Protocol

import cv2
import numpy as np

from ..models.schemas import CaptureConstraints, CaptureError, Severity
from ..services.collaborators import Notifier

logger = logging.getLogger(__name__)


CAPTURE_ERROR_MESSAGES = {
    CaptureError.PERMISSION_DENIED: "Camera permission denied. Please allow camera access in your browser settings.",
    CaptureError.DEVICE_NOT_FOUND: "No camera found. Please connect a camera and refresh the page.",
    CaptureError.DEVICE_BUSY: "Camera is being used by another application. Please close it and try again.",
    CaptureError.UNKNOWN: "Camera access denied.",
}


class DevicePermissionError(Exception):
    pass


class DeviceNotFoundError(Exception):
    pass


class DeviceBusyError(Exception):
    pass


class CaptureNotReadyError(Exception):
    pass


def classify_capture_error(error: BaseException) -> CaptureError:
    """Map a device-access failure to one of the four capture error classes."""
    if isinstance(error, (DevicePermissionError, PermissionError)):
        return CaptureError.PERMISSION_DENIED
    if isinstance(error, (DeviceNotFoundError, FileNotFoundError)):
        return CaptureError.DEVICE_NOT_FOUND
    if isinstance(error, DeviceBusyError):
        return CaptureError.DEVICE_BUSY
    return CaptureError.UNKNOWN


def detect_available_cameras(max_index: int = 5) -> Dict[int, bool]:
    """Probe camera indices and return availability map."""
    availability: Dict[int, bool] = {}
    for idx in range(max_index + 1):
        cap = cv2.VideoCapture(idx)
        available = cap.isOpened()
        if available:
            cap.release()
        availability[idx] = available
    return availability


def choose_camera_index(preferred: Optional[int]) -> Optional[int]:
    """Return a camera index to use, preferring the provided index else first available."""
    if preferred is not None:
        cap = cv2.VideoCapture(preferred)
        if cap.isOpened():
            cap.release()
            return preferred
        return None
    availability = detect_available_cameras()
    for idx, ok in availability.items():
        if ok:
            return idx
    return None


def _video_device_indices() -> List[int]:
    indices = []
    for path in glob.glob("/dev/video*"):
        match = re.match(r"/dev/video(\d+)$", path)
        if match:
            indices.append(int(match.group(1)))
    return sorted(indices)


class VideoStream(Protocol):
    def read(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class MediaDevice(Protocol):
    def open(self, constraints: CaptureConstraints) -> VideoStream: ...


class OpenCvVideoStream:
    def __init__(self, cap: cv2.VideoCapture):
        self.cap = cap

    def read(self) -> Optional[np.ndarray]:
        if not self.cap.isOpened():
            return None
        ret, frame = self.cap.read()
        if not ret:
            return None
        return frame

    def release(self) -> None:
        self.cap.release()


class OpenCvMediaDevice:
    """Opens local cameras through OpenCV. Calls block; run them off the event loop."""

    def _resolve_index(self, constraints: CaptureConstraints) -> int:
        if constraints.camera_index is not None:
            return constraints.camera_index
        if sys.platform.startswith("linux"):
            indices = _video_device_indices()
            if not indices:
                raise DeviceNotFoundError("No video devices present")
            return indices[0]
        index = choose_camera_index(None)
        if index is None:
            raise DeviceNotFoundError("No available camera device found")
        return index

    def open(self, constraints: CaptureConstraints) -> VideoStream:
        index = self._resolve_index(constraints)

        if sys.platform.startswith("linux"):
            device_path = f"/dev/video{index}"
            if not os.path.exists(device_path):
                raise DeviceNotFoundError(f"{device_path} does not exist")
            if not os.access(device_path, os.R_OK | os.W_OK):
                raise DevicePermissionError(f"No read/write access to {device_path}")

        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise DeviceBusyError(f"Could not open camera at index {index}")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        cap.set(cv2.CAP_PROP_FPS, constraints.fps)
        return OpenCvVideoStream(cap)


class CancellationToken:
    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class CaptureSession:
    def __init__(self, device_stream: VideoStream, constraints: CaptureConstraints):
        self.device_stream = device_stream
        self.constraints = constraints
        self.is_active = True


class CaptureController:
    """
    Owns the camera handle for one proctoring session.

    At most one CaptureSession is active at a time. Device failures are
    classified and reported to the candidate, never raised.
    """

    def __init__(
        self,
        notifier: Notifier,
        media_device: Optional[MediaDevice] = None,
        ready_timeout: float = 5.0,
        ready_poll_interval: float = 0.05,
    ):
        self.notifier = notifier
        self.media_device = media_device or OpenCvMediaDevice()
        self.ready_timeout = ready_timeout
        self.ready_poll_interval = ready_poll_interval

        self.session: Optional[CaptureSession] = None
        self.last_error: Optional[CaptureError] = None
        self.latest_frame: Optional[np.ndarray] = None

        self._listeners: List[Callable[[bool], None]] = []
        self._tokens: List[CancellationToken] = []
        # bumped by stop_capture so a start still waiting on the device gives up
        self._stop_generation = 0
        self._start_lock = asyncio.Lock()
        self._device_lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback fired with the new value whenever is_active changes."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_active(self, active: bool):
        for listener in list(self._listeners):
            listener(active)

    def new_cancellation_token(self) -> CancellationToken:
        """Token cancelled by the next stop_capture()."""
        token = CancellationToken()
        self._tokens.append(token)
        return token

    async def start_capture(self, constraints: Optional[CaptureConstraints] = None) -> bool:
        """Open the camera and wait until it delivers frames. Returns whether capture is active."""
        constraints = constraints or CaptureConstraints()

        generation = self._stop_generation
        async with self._start_lock:
            if self._stop_generation != generation:
                return False
            if self.is_active:
                return True

            try:
                stream = await asyncio.to_thread(self.media_device.open, constraints)
            except Exception as e:
                await self._fail(e)
                return False

            try:
                frame = await self._wait_until_ready(stream, generation)
            except Exception as e:
                self._release_quietly(stream)
                await self._fail(e)
                return False

            if frame is None:
                logger.info("Capture start abandoned; stop requested while opening")
                await asyncio.to_thread(self._release_quietly, stream)
                return False

            self.session = CaptureSession(stream, constraints)
            self.latest_frame = frame
            self.last_error = None
            logger.info("Capture started (%dx%d)", constraints.width, constraints.height)
            self._set_active(True)
            return True

    async def _wait_until_ready(self, stream: VideoStream, generation: int) -> Optional[np.ndarray]:
        """First frame from the stream, or None if capture was stopped meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while True:
            if self._stop_generation != generation:
                return None
            frame = await asyncio.to_thread(stream.read)
            if self._stop_generation != generation:
                return None
            if frame is not None:
                return frame
            if loop.time() >= deadline:
                raise CaptureNotReadyError("Camera did not deliver a frame in time")
            await asyncio.sleep(self.ready_poll_interval)

    async def _fail(self, error: Exception):
        self.last_error = classify_capture_error(error)
        logger.error("Error accessing camera (%s): %s", self.last_error.value, error)
        try:
            await self.notifier.notify(CAPTURE_ERROR_MESSAGES[self.last_error], Severity.ERROR)
        except Exception as notify_error:
            logger.warning("Failed to surface camera error: %s", notify_error)

    @staticmethod
    def _release_quietly(stream: VideoStream):
        try:
            stream.release()
        except Exception as e:
            logger.warning("Error releasing camera: %s", e)

    async def stop_capture(self):
        """Release the camera and cancel pending loop continuations. Safe to call repeatedly."""
        self._stop_generation += 1
        for token in self._tokens:
            token.cancel()
        self._tokens.clear()

        async with self._start_lock:
            session = self.session
            if session is None:
                return

            session.is_active = False
            self.session = None
            self.latest_frame = None
            async with self._device_lock:
                await asyncio.to_thread(self._release_quietly, session.device_stream)
            logger.info("Capture stopped")
            self._set_active(False)

    async def read_frame(self) -> Optional[np.ndarray]:
        """Grab the current frame from the active stream."""
        session = self.session
        if session is None or not session.is_active:
            return None
        async with self._device_lock:
            if not session.is_active:
                return None
            frame = await asyncio.to_thread(session.device_stream.read)
        if frame is not None:
            self.latest_frame = frame
        return frame

    def get_latest_frame(self) -> Optional[np.ndarray]:
        """Return a copy of the latest captured frame."""
        if self.latest_frame is None:
            return None
        return self.latest_frame.copy()
