import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from ..models.schemas import AuditEvent, AuditEventType, CursorSample
from ..services.collaborators import AuditDispatcher, AuthCollaborator
from .escalation import wall_clock_ms

logger = logging.getLogger(__name__)


class PointerActivitySampler:
    """
    Keeps the most recent pointer positions of a monitored candidate.

    Every move is buffered (oldest dropped past capacity); the latest one is
    sent to the audit service at most once per log interval.
    """

    def __init__(
        self,
        auth: AuthCollaborator,
        audit: AuditDispatcher,
        capacity: int = 100,
        log_interval_ms: int = 5000,
        clock: Callable[[], float] = wall_clock_ms,
    ):
        self.auth = auth
        self.audit = audit
        self.log_interval_ms = log_interval_ms
        self.clock = clock

        self.samples: Deque[CursorSample] = deque(maxlen=capacity)
        self.is_subscribed = False
        self.last_log_time: Optional[float] = None

    def start(self):
        if self.auth.user_id is None:
            logger.info("No user for this session; pointer tracking disabled")
            return
        self.is_subscribed = True
        self.last_log_time = None

    def stop(self):
        if self.is_subscribed:
            logger.info("Pointer tracking stopped")
        self.is_subscribed = False
        self.samples.clear()

    def handle_pointer_move(self, x: float, y: float) -> Optional[CursorSample]:
        if not self.is_subscribed:
            return None
        user_id = self.auth.user_id
        if user_id is None:
            return None

        now = self.clock()
        sample = CursorSample(x=x, y=y, timestamp=now)
        self.samples.append(sample)

        if self.last_log_time is None or now - self.last_log_time >= self.log_interval_ms:
            self.last_log_time = now
            self.audit.log_event(AuditEvent(
                user_id=user_id,
                event_type=AuditEventType.CURSOR_TRACKING,
                event_data={"position": sample.model_dump()},
            ))
        return sample

    def recent(self, count: int = 10) -> List[CursorSample]:
        if count <= 0:
            return []
        return list(self.samples)[-count:]
