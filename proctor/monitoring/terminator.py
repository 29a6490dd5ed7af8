import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from ..models.schemas import AuditEvent, AuditEventType, Severity
from ..services.collaborators import AuditCollaborator, AuthCollaborator, Notifier
from .capture import CaptureController

logger = logging.getLogger(__name__)

BLOCK_REASON = "Repeated eye contact violations (3 warnings)"
BLOCKED_MESSAGE = "You have been removed for repeatedly breaking interview monitoring rules."


class SessionTerminator:
    """Ends a blocked session: stop the camera, record why, sign out and redirect."""

    def __init__(
        self,
        capture: CaptureController,
        audit: AuditCollaborator,
        auth: AuthCollaborator,
        notifier: Notifier,
        delay_ms: int = 3000,
        redirect_to: str = "/login",
    ):
        self.capture = capture
        self.audit = audit
        self.auth = auth
        self.notifier = notifier
        self.delay_ms = delay_ms
        self.redirect_to = redirect_to

        self.terminated = False
        self._sign_out_task: Optional[asyncio.Task] = None
        self._finished_callbacks: List[Callable[[], Awaitable[None]]] = []

    def on_finished(self, callback: Callable[[], Awaitable[None]]):
        """Register a coroutine function awaited once the candidate has been redirected."""
        self._finished_callbacks.append(callback)

    async def terminate(self, reason: str = BLOCK_REASON):
        if self.terminated:
            return
        self.terminated = True

        await self.capture.stop_capture()

        user_id = self.auth.user_id
        if user_id:
            try:
                await self.audit.log_violation(user_id, reason)
            except Exception as e:
                logger.error("Error logging cheating record: %s", e)
            try:
                await self.audit.log_event(AuditEvent(
                    user_id=user_id,
                    event_type=AuditEventType.USER_BLOCKED,
                    event_data={"reason": "eye_contact_violations"},
                ))
            except Exception as e:
                logger.error("Error logging block event: %s", e)

        try:
            await self.notifier.notify(BLOCKED_MESSAGE, Severity.ERROR)
        except Exception as e:
            logger.warning("Failed to send blocked notification: %s", e)

        self._sign_out_task = asyncio.ensure_future(self._sign_out_later())

    async def _sign_out_later(self):
        await asyncio.sleep(self.delay_ms / 1000)
        try:
            await self.auth.sign_out()
        except Exception as e:
            logger.error("Error signing out: %s", e)
        try:
            await self.notifier.redirect(self.redirect_to)
        except Exception as e:
            logger.error("Error redirecting to %s: %s", self.redirect_to, e)
        for callback in list(self._finished_callbacks):
            try:
                await callback()
            except Exception as e:
                logger.error("Error finishing terminated session: %s", e)

    async def wait_for_sign_out(self):
        if self._sign_out_task is not None:
            await self._sign_out_task

    def cancel(self):
        """Drop the pending sign-out. Used on teardown."""
        task = self._sign_out_task
        if task is None or task.done():
            return
        # teardown may run from a finished callback inside the sign-out task itself
        if task is asyncio.current_task():
            return
        task.cancel()
