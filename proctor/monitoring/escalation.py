import logging
import time
from typing import Callable, List, Optional

from ..models.schemas import (
    AuditEvent,
    AuditEventType,
    GazeState,
    SessionStatus,
    Severity,
    ViolationRecord,
    VIOLATION_STATES,
)
from ..services.collaborators import AuditDispatcher, AuthCollaborator, Notifier
from .terminator import SessionTerminator

logger = logging.getLogger(__name__)


def wall_clock_ms() -> float:
    return time.time() * 1000


class EscalationStateMachine:
    """
    Three-strike violation policy.

    AWAY and NO_FACE count as violations, at most one per debounce window.
    GOOD clears the debounce window but never forgives a counted violation.
    The warning that reaches the limit also blocks the session, and BLOCKED
    is terminal: every later signal is ignored.
    """

    def __init__(
        self,
        auth: AuthCollaborator,
        notifier: Notifier,
        audit: AuditDispatcher,
        terminator: SessionTerminator,
        max_warnings: int = 3,
        debounce_ms: int = 5000,
        clock: Callable[[], float] = wall_clock_ms,
    ):
        self.auth = auth
        self.notifier = notifier
        self.audit = audit
        self.terminator = terminator
        self.max_warnings = max_warnings
        self.debounce_ms = debounce_ms
        self.clock = clock

        self.gaze_state = GazeState.CHECKING
        self.status = SessionStatus.MONITORING
        self.warning_count = 0
        self.violations: List[ViolationRecord] = []
        self.last_violation_at: Optional[float] = None

        self._blocked_listeners: List[Callable[[], None]] = []

    @property
    def is_blocked(self) -> bool:
        return self.status == SessionStatus.BLOCKED

    def on_blocked(self, listener: Callable[[], None]):
        self._blocked_listeners.append(listener)

    async def handle_gaze_state(self, state: GazeState):
        if self.is_blocked:
            return

        self.gaze_state = state
        if state == GazeState.GOOD:
            self.last_violation_at = None
        elif state in VIOLATION_STATES:
            await self._register_violation(state)

    async def _register_violation(self, state: GazeState):
        now = self.clock()
        if self.last_violation_at is not None and now - self.last_violation_at < self.debounce_ms:
            return
        if self.warning_count >= self.max_warnings:
            return

        self.warning_count += 1
        self.last_violation_at = now
        warning_number = self.warning_count
        self.violations.append(ViolationRecord(warning_number=warning_number, triggered_at=now))

        blocked = warning_number >= self.max_warnings
        if blocked:
            self.status = SessionStatus.BLOCKED

        logger.warning("Warning %d/%d (%s)", warning_number, self.max_warnings, state.value)

        user_id = self.auth.user_id
        if user_id:
            self.audit.log_event(AuditEvent(
                user_id=user_id,
                event_type=AuditEventType.EYE_CONTACT_WARNING,
                event_data={"warningNumber": warning_number},
            ))

        if blocked:
            for listener in list(self._blocked_listeners):
                listener()

        try:
            await self.notifier.notify(
                f"Warning {warning_number}/{self.max_warnings}: Please maintain eye contact with the camera.",
                Severity.WARNING,
            )
        except Exception as e:
            logger.warning("Failed to send warning notification: %s", e)

        if blocked:
            await self.terminator.terminate()
