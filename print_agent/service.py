"""The print agent: push session, pickup poll and job execution."""

from __future__ import annotations

import asyncio
import json
import logging

import httpx
import websockets
from pydantic import BaseModel, ValidationError

from backend.app.schemas.events import (
    AuthenticatedEvent,
    AuthenticateEvent,
    AuthTimeoutEvent,
    ErrorEvent,
    HeartbeatEvent,
    JobReadyEvent,
    JobReceivedEvent,
    StatusAckEvent,
    outbound_event_adapter,
)
from print_agent.api import PrintBridgeClient
from print_agent.config import AgentSettings
from print_agent.guard import ProcessingGuard
from print_agent.processor import JobProcessor
from print_agent.renderer import DryRunRenderAgent, LpRenderAgent, RenderAgent

logger = logging.getLogger(__name__)

MAX_RECONNECT_DELAY = 60.0


class PrintAgent:
    def __init__(
        self,
        settings: AgentSettings,
        *,
        client: PrintBridgeClient | None = None,
        renderer: RenderAgent | None = None,
        connect=websockets.connect,
    ):
        self.settings = settings
        self.client = client or PrintBridgeClient(settings)
        if renderer is None:
            renderer = DryRunRenderAgent() if settings.dry_run else LpRenderAgent()
        # One guard per agent session, shared by push and pickup across reconnects
        self.processor = JobProcessor(ProcessingGuard(), renderer, self.client)
        self._connect = connect
        self._job_tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.connection_id: str | None = None

    @property
    def guard(self) -> ProcessingGuard:
        return self.processor.guard

    async def run(self) -> None:
        logger.info("Print agent starting against %s", self.settings.api_base_url)
        await self.announce_printers()
        push = asyncio.create_task(self._push_loop(), name="push-session")
        poll = asyncio.create_task(self._poll_loop(), name="pickup-poll")
        try:
            await self._stopping.wait()
        finally:
            for task in (push, poll):
                task.cancel()
            await asyncio.gather(push, poll, return_exceptions=True)
            await self.wait_for_jobs()
            await self.client.close()
            logger.info("Print agent stopped")

    async def announce_printers(self) -> None:
        """Register the configured local printers and mark them online."""
        if not self.settings.printers:
            return
        try:
            result = await self.client.sync_printers(
                [{"name": name, "unique_id": name} for name in self.settings.printers]
            )
        except httpx.HTTPError as e:
            logger.warning("Could not announce printers: %s", e)
            return
        logger.info(
            "Announced %s printer(s): %s new, %s updated", len(result["printers"]), result["created"], result["updated"]
        )

    def stop(self) -> None:
        self._stopping.set()

    async def wait_for_jobs(self) -> None:
        if self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)

    # Pickup

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def poll_once(self) -> int:
        """Fetch ready jobs and run them. Returns how many were executed here."""
        try:
            jobs = await self.client.list_ready()
        except httpx.HTTPError as e:
            logger.warning("Pickup failed: %s", e)
            return 0

        executed = 0
        for job in jobs:
            if await self.processor.process(job, "pickup"):
                executed += 1
        return executed

    # Push

    async def _push_loop(self) -> None:
        attempts = 0
        auth_failures = 0
        while not self._stopping.is_set():
            outcome = await self._connect_once()
            if outcome == "auth_failed":
                auth_failures += 1
                if auth_failures > self.settings.auth_max_retries:
                    logger.error("Authentication rejected %s time(s); push disabled, relying on pickup", auth_failures)
                    return
                await asyncio.sleep(self.settings.auth_retry_delay_seconds)
                continue

            if outcome == "session":
                attempts = 0
                auth_failures = 0
            attempts += 1
            if attempts > self.settings.max_reconnect_attempts:
                logger.error("Gave up reconnecting after %s attempts; relying on pickup", attempts - 1)
                return
            delay = min(self.settings.reconnect_delay_seconds * attempts, MAX_RECONNECT_DELAY)
            logger.info("Reconnecting push channel in %.0fs (attempt %s)", delay, attempts)
            await asyncio.sleep(delay)

    async def _connect_once(self) -> str:
        """One connection lifetime: 'session', 'auth_failed' or 'unreachable'."""
        try:
            async with self._connect(self.settings.ws_url) as ws:
                if not await self._authenticate(ws):
                    return "auth_failed"
                try:
                    await self._session(ws)
                finally:
                    self.connection_id = None
                return "session"
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning("Push channel unavailable: %s", e)
            return "unreachable"

    async def _authenticate(self, ws) -> bool:
        await self._send(ws, AuthenticateEvent(api_key=self.settings.api_key))
        while True:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.settings.auth_timeout_seconds)
            event = self._parse(raw)
            if isinstance(event, AuthenticatedEvent):
                if not event.success:
                    logger.error("Authentication failed: %s", event.error)
                    return False
                self.connection_id = event.connection_id
                logger.info("Authenticated as %s (connection %s)", event.username, event.connection_id)
                return True
            if isinstance(event, AuthTimeoutEvent):
                logger.error("Server closed the connection: %s", event.message)
                return False

    async def _session(self, ws) -> None:
        heartbeat = asyncio.create_task(self._heartbeat_loop(ws), name="heartbeat")
        try:
            async for raw in ws:
                await self.handle_message(ws, raw)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_seconds)
            await self._send(ws, HeartbeatEvent())

    async def handle_message(self, ws, raw: str | bytes) -> None:
        event = self._parse(raw)
        if isinstance(event, JobReadyEvent):
            job = event.job
            logger.info("Job %s pushed for printer %s", job.id, job.printer_name)
            self._spawn(self.processor.process(job, "push"), name=f"job-{job.id}")
            await self._send(ws, JobReceivedEvent(job_id=job.id))
        elif isinstance(event, ErrorEvent):
            logger.warning("Server error%s: %s", f" for job {event.job_id}" if event.job_id else "", event.message)
        elif isinstance(event, StatusAckEvent):
            logger.debug("Status %s for job %s acknowledged", event.status, event.job_id)
        elif event is not None:
            logger.debug("Ignoring %s event", event.type)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)
        return task

    @staticmethod
    def _parse(raw: str | bytes):
        try:
            return outbound_event_adapter.validate_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring malformed server event: %s", e)
            return None

    @staticmethod
    async def _send(ws, event: BaseModel) -> None:
        await ws.send(json.dumps(event.model_dump(mode="json")))
