"""
External collaborators the proctoring core talks to.

- Audit: records proctoring events for later review (fire-and-forget).
- Auth: current user identity and sign-out.
- Notifier: user-facing messages and the final redirect, pushed to the
  candidate's WebSocket connections.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Protocol, Set

import httpx
from fastapi import WebSocket

from ..models.schemas import AuditEvent, Severity

logger = logging.getLogger(__name__)


class AuditCollaborator(Protocol):
    async def log_event(self, event: AuditEvent) -> None: ...

    async def log_violation(self, user_id: str, reason: str) -> None: ...


class AuthCollaborator(Protocol):
    @property
    def user_id(self) -> Optional[str]: ...

    async def sign_out(self) -> None: ...


class Notifier(Protocol):
    async def notify(self, message: str, severity: Severity) -> None: ...

    async def redirect(self, location: str) -> None: ...


class HttpAuditCollaborator:
    """Posts audit records to the audit service as JSON."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def log_event(self, event: AuditEvent) -> None:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/events",
                json=event.model_dump(mode="json"),
                timeout=self.timeout,
            )
            response.raise_for_status()

    async def log_violation(self, user_id: str, reason: str) -> None:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/violations",
                json={"user_id": user_id, "reason": reason},
                timeout=self.timeout,
            )
            response.raise_for_status()


class NullAuditCollaborator:
    """Used when no audit service is configured; records go to the log only."""

    async def log_event(self, event: AuditEvent) -> None:
        logger.info("Audit event %s for user %s: %s", event.event_type.value, event.user_id, event.event_data)

    async def log_violation(self, user_id: str, reason: str) -> None:
        logger.info("Violation for user %s: %s", user_id, reason)


class AuditDispatcher:
    """
    Runs audit calls as background tasks.

    Callers never wait on the result. Failures are logged and dropped.
    """

    def __init__(self, audit: AuditCollaborator):
        self.audit = audit
        self._pending: Set[asyncio.Task] = set()

    def fire_and_forget(self, coro: Awaitable[None], description: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded(coro, description))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guarded(self, coro: Awaitable[None], description: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to %s: %s", description, e)

    def log_event(self, event: AuditEvent) -> asyncio.Task:
        return self.fire_and_forget(
            self.audit.log_event(event), f"log {event.event_type.value}"
        )

    async def drain(self):
        """Wait for all in-flight audit calls to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_all(self):
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)


class SessionAuth:
    """Identity of the candidate bound to one proctoring session."""

    def __init__(self, user_id: Optional[str]):
        self._user_id = user_id
        self.signed_out = False

    @property
    def user_id(self) -> Optional[str]:
        return None if self.signed_out else self._user_id

    async def sign_out(self) -> None:
        logger.info("Signing out user %s", self._user_id)
        self.signed_out = True


class WebSocketNotifier:
    """Broadcasts notifications to every socket connected to a session."""

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    def add(self, websocket: WebSocket):
        self.connections.add(websocket)

    def discard(self, websocket: WebSocket):
        self.connections.discard(websocket)

    async def _broadcast(self, payload: dict):
        if not self.connections:
            logger.debug("No WebSocket connections. Message not sent: %s", payload)
            return
        disconnected = set()
        for websocket in list(self.connections):
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.error("Error sending to WebSocket: %s", e)
                disconnected.add(websocket)
        self.connections -= disconnected

    async def notify(self, message: str, severity: Severity) -> None:
        await self._broadcast({"type": "notification", "severity": severity.value, "message": message})

    async def redirect(self, location: str) -> None:
        await self._broadcast({"type": "redirect", "location": location})

    async def close_all(self):
        for websocket in list(self.connections):
            try:
                await websocket.close()
            except Exception:
                pass
        self.connections.clear()
