import asyncio
import logging
from typing import Optional

from ..models.schemas import ClassificationResult
from .capture import CancellationToken, CaptureController
from .escalation import EscalationStateMachine
from .gaze_classifier import GazeClassifier

logger = logging.getLogger(__name__)


class GazeSamplingLoop:
    """
    Classifies the live frame once per display refresh while capture is active.

    Each iteration is scheduled only after the previous classification has
    been forwarded, so iterations never overlap. Runs stop when the token is
    cancelled, capture goes inactive, or the session is blocked.
    """

    def __init__(
        self,
        capture: CaptureController,
        classifier: GazeClassifier,
        machine: EscalationStateMachine,
        frame_interval: float = 1.0 / 30,
    ):
        self.capture = capture
        self.classifier = classifier
        self.machine = machine
        self.frame_interval = frame_interval

        self.iterations = 0
        self.last_result: Optional[ClassificationResult] = None
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None

        self._unsubscribe = capture.subscribe(self._on_capture_active)
        machine.on_blocked(self._cancel_token)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _on_capture_active(self, active: bool):
        if active:
            self.start()
        else:
            self._cancel_token()

    def _cancel_token(self):
        if self._token is not None:
            self._token.cancel()

    def _should_continue(self, token: CancellationToken) -> bool:
        return not token.cancelled and self.capture.is_active and not self.machine.is_blocked

    def start(self):
        if self.machine.is_blocked or not self.capture.is_active:
            return
        if not self.classifier.is_initialized:
            logger.warning("Face detector not initialized; gaze sampling not started")
            return
        if self.is_running and self._token is not None and not self._token.cancelled:
            return

        previous = self._task if self.is_running else None
        self._token = self.capture.new_cancellation_token()
        self._task = asyncio.ensure_future(self._run(self._token, previous))
        logger.info("Gaze sampling started")

    async def _run(self, token: CancellationToken, previous: Optional[asyncio.Task]):
        if previous is not None:
            await asyncio.wait([previous])

        while self._should_continue(token):
            try:
                frame = await self.capture.read_frame()
            except Exception:
                logger.exception("Error reading camera frame")
                break
            if frame is not None and self._should_continue(token):
                result = await self.classifier.classify(frame)
                if not self._should_continue(token):
                    break
                self.last_result = result
                self.iterations += 1
                await self.machine.handle_gaze_state(result.state)
            await asyncio.sleep(self.frame_interval)

        logger.info("Gaze sampling stopped after %d iterations", self.iterations)

    async def stop(self):
        self._cancel_token()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def close(self):
        self._unsubscribe()
