"""Server side of the push channel.

One :class:`ChannelSession` exists per open socket and walks through
CONNECTING -> AUTHENTICATING -> AUTHENTICATED -> (ACTIVE <-> IDLE) ->
DISCONNECTED. A socket that does not authenticate within the configured
window is told so and closed.

Jobs pushed over a session are tracked until the agent acknowledges receipt.
A missing receipt is only logged: the job stays ``ready`` and the agent's
pickup poll collects it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from backend.app.core.config import settings
from backend.app.core.exceptions import PrintBridgeError, Unauthorized
from backend.app.core.websocket import ConnectionManager
from backend.app.models.print_job import TERMINAL_STATUSES
from backend.app.models.user import User
from backend.app.schemas.events import (
    AuthenticatedEvent,
    AuthenticateEvent,
    AuthTimeoutEvent,
    ErrorEvent,
    HeartbeatAckEvent,
    HeartbeatEvent,
    JobReadyEvent,
    JobReceivedEvent,
    StatusAckEvent,
    StatusUpdateEvent,
    inbound_event_adapter,
)
from backend.app.schemas.print_job import PrintJobDelivery
from backend.app.services.connection_registry import ConnectionRegistry
from backend.app.services.job_store import JobStore

logger = logging.getLogger(__name__)

CLOSE_CODE_AUTH_FAILED = 4401
CLOSE_CODE_AUTH_TIMEOUT = 4408

CredentialResolver = Callable[[str], Awaitable[User]]


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    IDLE = "idle"
    DISCONNECTED = "disconnected"


# States in which the session may receive job pushes
DELIVERABLE_STATES = frozenset({ChannelState.AUTHENTICATED, ChannelState.ACTIVE, ChannelState.IDLE})


@dataclass(slots=True)
class ChannelSession:
    connection_id: str
    state: ChannelState = ChannelState.CONNECTING
    user_id: int | None = None
    username: str | None = None
    in_flight: set[int] = field(default_factory=set)

    def job_pushed(self, job_id: int) -> None:
        self.in_flight.add(job_id)
        self.state = ChannelState.ACTIVE

    def job_settled(self, job_id: int) -> None:
        self.in_flight.discard(job_id)
        if not self.in_flight and self.state == ChannelState.ACTIVE:
            self.state = ChannelState.IDLE


class DeliveryChannel:
    def __init__(
        self,
        *,
        connections: ConnectionManager,
        registry: ConnectionRegistry,
        job_store: JobStore,
        resolve_credential: CredentialResolver,
        auth_timeout: float = settings.ws_auth_timeout_seconds,
        receipt_grace: float = settings.receipt_grace_seconds,
    ):
        self._connections = connections
        self._registry = registry
        self._job_store = job_store
        self._resolve_credential = resolve_credential
        self._auth_timeout = auth_timeout
        self._receipt_grace = receipt_grace
        self._sessions: dict[str, ChannelSession] = {}
        # job id -> (connection id, timer)
        self._awaiting_receipt: dict[int, tuple[str, asyncio.TimerHandle]] = {}

    # Socket lifecycle

    async def serve(self, websocket: WebSocket) -> None:
        """Run one socket from accept to close."""
        connection_id = await self._connections.connect(websocket)
        session = ChannelSession(connection_id=connection_id)
        self._sessions[connection_id] = session
        logger.info("Push connection %s opened", connection_id)

        try:
            session.state = ChannelState.AUTHENTICATING
            if not await self._authenticate(session, websocket):
                return

            while True:
                raw = await self._receive(websocket)
                await self._handle_frame(session, raw)

        except WebSocketDisconnect:
            logger.info("Push connection %s closed by peer", connection_id)
        except RuntimeError as e:
            if websocket.application_state != WebSocketState.DISCONNECTED:
                logger.error("Push connection %s error: %s", connection_id, e, exc_info=True)
            else:
                # Closed from our side (eviction, auth failure, shutdown)
                logger.info("Push connection %s closed by server: %s", connection_id, e)
        except Exception as e:
            logger.error("Push connection %s error: %s", connection_id, e, exc_info=True)
        finally:
            self._teardown(session)

    async def _authenticate(self, session: ChannelSession, websocket: WebSocket) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._auth_timeout

        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                raw = await asyncio.wait_for(self._receive(websocket), timeout=remaining)
            except asyncio.TimeoutError:
                logger.info("Connection %s did not authenticate within %.1fs", session.connection_id, self._auth_timeout)
                await self._send(session, AuthTimeoutEvent())
                await self._connections.close(
                    session.connection_id, code=CLOSE_CODE_AUTH_TIMEOUT, reason="authentication timeout"
                )
                return False

            event = await self._parse(session, raw)
            if event is None:
                continue
            if isinstance(event, HeartbeatEvent):
                await self._send(session, HeartbeatAckEvent())
                continue
            if not isinstance(event, AuthenticateEvent):
                await self._send(session, ErrorEvent(message="Not authenticated"))
                continue
            return await self._handle_authenticate(session, event)

    async def _handle_authenticate(self, session: ChannelSession, event: AuthenticateEvent) -> bool:
        if not event.api_key:
            return await self._reject(session, "API key required")

        try:
            user = await self._resolve_credential(event.api_key)
        except Unauthorized as e:
            return await self._reject(session, str(e))
        except Exception as e:
            logger.error("Credential lookup failed for connection %s: %s", session.connection_id, e, exc_info=True)
            return await self._reject(session, "Internal error during authentication")

        session.user_id = user.id
        session.username = user.username
        await self._registry.register(user.id, session.connection_id, username=user.username)
        session.state = ChannelState.AUTHENTICATED
        await self._send(
            session,
            AuthenticatedEvent(
                success=True,
                user_id=user.id,
                username=user.username,
                connection_id=session.connection_id,
            ),
        )
        logger.info("Connection %s authenticated as %s (user %s)", session.connection_id, user.username, user.id)
        return True

    async def _reject(self, session: ChannelSession, reason: str) -> bool:
        logger.info("Authentication failed on connection %s: %s", session.connection_id, reason)
        await self._send(session, AuthenticatedEvent(success=False, error=reason))
        await self._connections.close(session.connection_id, code=CLOSE_CODE_AUTH_FAILED, reason="authentication failed")
        return False

    def _teardown(self, session: ChannelSession) -> None:
        session.state = ChannelState.DISCONNECTED
        self._sessions.pop(session.connection_id, None)
        self._connections.disconnect(session.connection_id)
        self._registry.remove_by_connection(session.connection_id)

        for job_id, (connection_id, timer) in list(self._awaiting_receipt.items()):
            if connection_id == session.connection_id:
                timer.cancel()
                del self._awaiting_receipt[job_id]
                logger.info("Connection %s dropped before acknowledging job %s; left for pickup", connection_id, job_id)

        logger.info("Push connection %s torn down (user %s)", session.connection_id, session.user_id)

    # Frames

    @staticmethod
    async def _receive(websocket: WebSocket) -> str | None:
        """Next text frame, or None for a binary frame."""
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
        return message.get("text")

    async def _parse(self, session: ChannelSession, raw: str | None):
        if raw is None:
            logger.debug("Binary frame on connection %s", session.connection_id)
            await self._send(session, ErrorEvent(message="Malformed event"))
            return None
        try:
            return inbound_event_adapter.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.debug("Bad frame on connection %s: %s", session.connection_id, e)
            await self._send(session, ErrorEvent(message="Malformed event"))
            return None

    async def _handle_frame(self, session: ChannelSession, raw: str | None) -> None:
        event = await self._parse(session, raw)
        if event is None:
            return

        if isinstance(event, HeartbeatEvent):
            self._registry.touch(session.connection_id)
            await self._send(session, HeartbeatAckEvent())
        elif isinstance(event, JobReceivedEvent):
            self._registry.touch(session.connection_id)
            self.record_receipt(event.job_id, session.connection_id)
        elif isinstance(event, StatusUpdateEvent):
            self._registry.touch(session.connection_id)
            await self._handle_status_update(session, event)
        elif isinstance(event, AuthenticateEvent):
            await self._send(session, ErrorEvent(message="Already authenticated"))

    async def _handle_status_update(self, session: ChannelSession, event: StatusUpdateEvent) -> None:
        # A status report implies the job arrived
        self.record_receipt(event.job_id, session.connection_id)
        try:
            job, changed = await self._job_store.update_status(
                event.job_id, event.status, event.error, owner_id=session.user_id
            )
        except PrintBridgeError as e:
            logger.info("Rejected status %s for job %s from user %s: %s", event.status, event.job_id, session.user_id, e)
            await self._send(session, ErrorEvent(message=str(e), job_id=event.job_id))
            return

        if job.status in TERMINAL_STATUSES:
            self.job_settled(job.id)
        await self._send(session, StatusAckEvent(job_id=job.id, status=job.status, changed=changed))

    # Push side

    async def push_job(self, connection_id: str, job: PrintJobDelivery) -> bool:
        """Send ``job-ready`` on an authenticated connection.

        Returns False if the connection is unknown, not authenticated, or the
        send fails.
        """
        session = self._sessions.get(connection_id)
        if session is None or session.state not in DELIVERABLE_STATES:
            return False

        sent = await self._send(session, JobReadyEvent(job=job))
        if not sent:
            return False

        session.job_pushed(job.id)
        self._arm_receipt_timer(job.id, connection_id)
        logger.info("Pushed job %s to connection %s (user %s)", job.id, connection_id, session.user_id)
        return True

    def record_receipt(self, job_id: int, connection_id: str) -> None:
        pending = self._awaiting_receipt.get(job_id)
        if pending is None or pending[0] != connection_id:
            return
        pending[1].cancel()
        del self._awaiting_receipt[job_id]
        logger.debug("Connection %s acknowledged job %s", connection_id, job_id)

    def job_settled(self, job_id: int) -> None:
        """A terminal status was reported for ``job_id``, over the socket or over HTTP."""
        for session in self._sessions.values():
            if job_id in session.in_flight:
                session.job_settled(job_id)

    async def disconnect_user(self, user_id: int, reason: str) -> bool:
        """Close the user's live socket, if any. Used when an account loses access."""
        connection_id = self._registry.lookup(user_id)
        if connection_id is None:
            return False
        self._registry.remove(user_id)
        await self._connections.close(connection_id, code=CLOSE_CODE_AUTH_FAILED, reason=reason)
        logger.info("Closed connection %s for user %s: %s", connection_id, user_id, reason)
        return True

    def awaiting_receipt(self, job_id: int) -> bool:
        return job_id in self._awaiting_receipt

    def session(self, connection_id: str) -> ChannelSession | None:
        return self._sessions.get(connection_id)

    def sessions(self) -> list[ChannelSession]:
        return list(self._sessions.values())

    def _arm_receipt_timer(self, job_id: int, connection_id: str) -> None:
        previous = self._awaiting_receipt.pop(job_id, None)
        if previous is not None:
            previous[1].cancel()
        loop = asyncio.get_running_loop()
        timer = loop.call_later(self._receipt_grace, self._receipt_window_expired, job_id, connection_id)
        self._awaiting_receipt[job_id] = (connection_id, timer)

    def _receipt_window_expired(self, job_id: int, connection_id: str) -> None:
        pending = self._awaiting_receipt.get(job_id)
        if pending is None or pending[0] != connection_id:
            return
        del self._awaiting_receipt[job_id]
        logger.warning(
            "No receipt for job %s from connection %s within %.1fs; job stays ready for pickup",
            job_id,
            connection_id,
            self._receipt_grace,
        )

    async def _send(self, session: ChannelSession, event: BaseModel) -> bool:
        return await self._connections.send(session.connection_id, event.model_dump(mode="json"))
