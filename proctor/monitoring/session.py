import logging
from typing import Awaitable, Callable, Optional

from ..config import Settings, get_settings
from ..models.schemas import CaptureConstraints, GAZE_STATUS_TEXT, OperatorSnapshot, Severity
from ..services.collaborators import (
    AuditCollaborator,
    AuditDispatcher,
    AuthCollaborator,
    HttpAuditCollaborator,
    NullAuditCollaborator,
    SessionAuth,
    WebSocketNotifier,
)
from .capture import CaptureController, MediaDevice
from .escalation import EscalationStateMachine, wall_clock_ms
from .gaze_classifier import DetectorConfig, FaceLandmarkDetector, GazeClassifier, create_detector
from .pointer_sampler import PointerActivitySampler
from .sampling_loop import GazeSamplingLoop
from .terminator import SessionTerminator

logger = logging.getLogger(__name__)

MODEL_INIT_FAILED_MESSAGE = "Failed to initialize face detection. Please refresh the page."


def build_audit_collaborator(settings: Settings) -> AuditCollaborator:
    if settings.AUDIT_SERVICE_URL:
        return HttpAuditCollaborator(settings.AUDIT_SERVICE_URL, timeout=settings.AUDIT_TIMEOUT)
    return NullAuditCollaborator()


class ProctoringSession:
    """All proctoring components for one candidate, wired together."""

    def __init__(
        self,
        session_id: str,
        user_id: Optional[str],
        settings: Optional[Settings] = None,
        camera_index: Optional[int] = None,
        media_device: Optional[MediaDevice] = None,
        audit: Optional[AuditCollaborator] = None,
        auth: Optional[AuthCollaborator] = None,
        notifier: Optional[WebSocketNotifier] = None,
        detector_factory: Callable[[DetectorConfig], FaceLandmarkDetector] = create_detector,
        clock: Callable[[], float] = wall_clock_ms,
    ):
        self.session_id = session_id
        self.settings = settings or get_settings()
        self.notifier = notifier or WebSocketNotifier()
        self.auth = auth or SessionAuth(user_id)
        self.audit_collaborator = audit or build_audit_collaborator(self.settings)
        self.audit = AuditDispatcher(self.audit_collaborator)
        self.operator_view_visible = False

        self.constraints = CaptureConstraints(
            width=self.settings.CAPTURE_WIDTH,
            height=self.settings.CAPTURE_HEIGHT,
            fps=self.settings.CAPTURE_FPS,
            camera_index=camera_index if camera_index is not None else self.settings.CAMERA_INDEX,
        )

        self.capture = CaptureController(
            self.notifier,
            media_device=media_device,
            ready_timeout=self.settings.CAPTURE_READY_TIMEOUT,
        )
        self.classifier = GazeClassifier(
            DetectorConfig(
                min_detection_confidence=self.settings.FACE_MIN_DETECTION_CONFIDENCE,
                min_tracking_confidence=self.settings.FACE_MIN_TRACKING_CONFIDENCE,
            ),
            detector_factory=detector_factory,
        )
        self.terminator = SessionTerminator(
            self.capture,
            self.audit_collaborator,
            self.auth,
            self.notifier,
            delay_ms=self.settings.TERMINATION_DELAY_MS,
            redirect_to=self.settings.LOGIN_REDIRECT,
        )
        self.machine = EscalationStateMachine(
            self.auth,
            self.notifier,
            self.audit,
            self.terminator,
            max_warnings=self.settings.MAX_WARNINGS,
            debounce_ms=self.settings.VIOLATION_DEBOUNCE_MS,
            clock=clock,
        )
        self.pointer_sampler = PointerActivitySampler(
            self.auth,
            self.audit,
            capacity=self.settings.CURSOR_BUFFER_SIZE,
            log_interval_ms=self.settings.CURSOR_LOG_INTERVAL_MS,
            clock=clock,
        )
        self.sampling_loop = GazeSamplingLoop(
            self.capture,
            self.classifier,
            self.machine,
            frame_interval=self.settings.frame_interval,
        )
        self.machine.on_blocked(self.pointer_sampler.stop)

    @property
    def is_blocked(self) -> bool:
        return self.machine.is_blocked

    async def start(self) -> bool:
        """Load the face model and open the camera. Returns whether capture is running."""
        if self.is_blocked:
            return False

        self.pointer_sampler.start()
        return await self.start_capture()

    async def start_capture(self) -> bool:
        """Open the camera once the face model is loaded. Returns whether capture is running."""
        if self.is_blocked:
            return False

        try:
            await self.classifier.initialize()
        except Exception as e:
            logger.error("Error initializing face detection model: %s", e)
            await self.notifier.notify(MODEL_INIT_FAILED_MESSAGE, Severity.ERROR)
            return False

        return await self.capture.start_capture(self.constraints)

    async def stop_capture(self):
        await self.capture.stop_capture()

    def on_terminated(self, callback: Callable[[], Awaitable[None]]):
        """Await callback after a blocked candidate has been signed out and redirected."""
        self.terminator.on_finished(callback)

    def handle_pointer_move(self, x: float, y: float):
        if self.is_blocked:
            return None
        return self.pointer_sampler.handle_pointer_move(x, y)

    def snapshot(self) -> OperatorSnapshot:
        return OperatorSnapshot(
            gaze_state=self.machine.gaze_state,
            status_text=GAZE_STATUS_TEXT[self.machine.gaze_state],
            warning_count=self.machine.warning_count,
            max_warnings=self.machine.max_warnings,
            session_status=self.machine.status,
            is_capture_active=self.capture.is_active,
            capture_error=self.capture.last_error,
            recent_cursor_samples=self.pointer_sampler.recent(self.settings.OPERATOR_CURSOR_SAMPLES),
            violations=list(self.machine.violations),
        )

    async def teardown(self):
        """Cancel every timer and task and release the camera."""
        await self.sampling_loop.stop()
        self.terminator.cancel()
        self.pointer_sampler.stop()
        await self.capture.stop_capture()
        self.audit.cancel_all()
        self.sampling_loop.close()
        await self.notifier.close_all()
