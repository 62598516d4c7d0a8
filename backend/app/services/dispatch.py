"""Print job submission and best-effort push delivery.

A submitted job is durable (committed as ``ready``) before any delivery is
attempted. Delivery then runs as a detached task so the submit call never
waits on the agent. Whatever happens to the push, the job stays in the
ready set and the agent's pickup poll is the fallback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from backend.app.core.exceptions import InvalidState, NotFound
from backend.app.models.print_job import PrintJob
from backend.app.models.user import User
from backend.app.schemas.print_job import PrintJobDelivery, PrintRequest
from backend.app.services.connection_registry import ConnectionRegistry
from backend.app.services.delivery_channel import DeliveryChannel
from backend.app.services.job_store import JobStore, to_delivery
from backend.app.services.render_payload import build_render_payload, describe_source

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    PUSHED = "pushed"
    NO_CONNECTION = "no_connection"


@dataclass(slots=True)
class SubmitResult:
    job: PrintJob
    delivery: DeliveryOutcome

    @property
    def job_id(self) -> int:
        return self.job.id

    @property
    def status(self) -> str:
        return self.job.status


class DispatchService:
    def __init__(self, *, job_store: JobStore, registry: ConnectionRegistry, channel: DeliveryChannel):
        self._job_store = job_store
        self._registry = registry
        self._channel = channel
        self._push_tasks: set[asyncio.Task] = set()

    async def submit(self, user: User, request: PrintRequest) -> SubmitResult:
        printer = await self._job_store.resolve_printer(request.printer_id, request.printer_unique_id)
        if printer is None:
            target = request.printer_id if request.printer_id is not None else request.printer_unique_id
            raise NotFound(f"Printer {target} not found")
        if not printer.is_active:
            raise InvalidState(f"Printer {printer.name} is disabled")
        if printer.status != "online":
            raise InvalidState(f"Printer {printer.name} is offline")

        source_type, document_name, document_url = describe_source(request)
        job = await self._job_store.create_ready(
            user_id=user.id,
            printer_id=printer.id,
            source_type=source_type,
            document_name=document_name,
            document_url=document_url,
            copies=getattr(request, "copies", 1),
            duplex=getattr(request, "duplex", False),
            orientation=getattr(request, "orientation", "portrait"),
            build_payload=lambda job_id: build_render_payload(request, printer.name, document_name, job_id),
        )
        logger.info(
            "Job %s (%s '%s') ready for user %s on printer %s",
            job.id,
            source_type,
            document_name,
            user.username,
            printer.name,
        )

        delivery = self.attempt_delivery(job)
        return SubmitResult(job=job, delivery=delivery)

    async def requeue(self, job_id: int, owner_id: int | None = None) -> SubmitResult:
        job = await self._job_store.requeue(job_id, owner_id=owner_id)
        return SubmitResult(job=job, delivery=self.attempt_delivery(job))

    def attempt_delivery(self, job: PrintJob) -> DeliveryOutcome:
        """Schedule a push of ``job`` to its owner's live connection, if any."""
        connection_id = self._registry.lookup(job.user_id)
        if connection_id is None:
            logger.info("No live connection for user %s; job %s waits for pickup", job.user_id, job.id)
            return DeliveryOutcome.NO_CONNECTION

        task = asyncio.create_task(self._push(connection_id, to_delivery(job)), name=f"push-job-{job.id}")
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)
        return DeliveryOutcome.PUSHED

    async def _push(self, connection_id: str, delivery: PrintJobDelivery) -> None:
        try:
            pushed = await self._channel.push_job(connection_id, delivery)
        except Exception as e:
            logger.error("Push of job %s to connection %s raised: %s", delivery.id, connection_id, e, exc_info=True)
            return
        if not pushed:
            logger.warning(
                "Push of job %s to connection %s did not go through; job stays ready for pickup",
                delivery.id,
                connection_id,
            )

    async def wait_for_pushes(self) -> None:
        """Wait for in-flight push tasks (used at shutdown and in tests)."""
        if self._push_tasks:
            await asyncio.gather(*list(self._push_tasks), return_exceptions=True)

    @property
    def pending_pushes(self) -> int:
        return len(self._push_tasks)
