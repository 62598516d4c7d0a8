"""Persistence of print jobs and their status transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from backend.app.core.exceptions import InvalidState, NotFound
from backend.app.models.print_job import PrintJob
from backend.app.models.printer import Printer
from backend.app.schemas.print_job import PrintJobDelivery

logger = logging.getLogger(__name__)

# Reporter-driven transitions. Repeating the current status is always a no-op.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"ready", "processing", "completed", "failed"}),
    "ready": frozenset({"processing", "completed", "failed"}),
    "processing": frozenset({"completed", "failed"}),
    "failed": frozenset({"ready", "processing"}),
    "completed": frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_delivery(job: PrintJob) -> PrintJobDelivery:
    """Agent-facing view of a job. ``job.printer`` must be loaded."""
    payload = None
    if job.render_payload:
        try:
            payload = json.loads(job.render_payload)
        except json.JSONDecodeError:
            logger.warning("Job %s has an unparseable render payload", job.id)
    return PrintJobDelivery(
        id=job.id,
        document_name=job.document_name,
        document_url=job.document_url,
        source_type=job.source_type,
        printer_id=job.printer_id,
        printer_name=job.printer.name,
        printer_unique_id=job.printer.unique_id,
        status=job.status,
        copies=job.copies,
        duplex=job.duplex,
        orientation=job.orientation,
        render_payload=payload,
        created_at=job.created_at,
    )


class JobStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_ready(
        self,
        *,
        user_id: int,
        printer_id: int,
        source_type: str,
        document_name: str,
        document_url: str,
        copies: int = 1,
        duplex: bool = False,
        orientation: str = "portrait",
        build_payload: Callable[[int], dict[str, Any]],
    ) -> PrintJob:
        """Insert a job, attach its render payload and mark it ready.

        The payload embeds the job id, so the row is flushed as ``pending``
        first. Only the committed ``ready`` row is ever visible to pickup.
        """
        async with self._session_factory() as db:
            job = PrintJob(
                user_id=user_id,
                printer_id=printer_id,
                source_type=source_type,
                document_name=document_name,
                document_url=document_url,
                copies=copies,
                duplex=duplex,
                orientation=orientation,
                status="pending",
            )
            db.add(job)
            await db.flush()

            job.render_payload = json.dumps(build_payload(job.id))
            job.status = "ready"
            await db.commit()

            return await self._load(db, job.id)

    async def get(self, job_id: int) -> PrintJob | None:
        async with self._session_factory() as db:
            return await self._load(db, job_id)

    async def list_jobs(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        printer_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[PrintJob]:
        query = select(PrintJob).options(selectinload(PrintJob.printer)).order_by(PrintJob.id.desc())
        if user_id is not None:
            query = query.where(PrintJob.user_id == user_id)
        if status is not None:
            query = query.where(PrintJob.status == status)
        if printer_id is not None:
            query = query.where(PrintJob.printer_id == printer_id)
        query = query.limit(limit).offset(offset)

        async with self._session_factory() as db:
            result = await db.execute(query)
            return result.scalars().all()

    async def list_ready(self, user_id: int) -> Sequence[PrintJob]:
        """Jobs waiting for the user's agent, oldest first."""
        query = (
            select(PrintJob)
            .options(selectinload(PrintJob.printer))
            .where(PrintJob.user_id == user_id, PrintJob.status == "ready")
            .order_by(PrintJob.created_at, PrintJob.id)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return result.scalars().all()

    async def list_for_printer(self, printer_id: int, statuses: Sequence[str] = ("pending", "ready")) -> Sequence[PrintJob]:
        query = (
            select(PrintJob)
            .options(selectinload(PrintJob.printer))
            .where(PrintJob.printer_id == printer_id, PrintJob.status.in_(statuses))
            .order_by(PrintJob.created_at, PrintJob.id)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return result.scalars().all()

    async def update_status(
        self,
        job_id: int,
        status: str,
        error: str | None = None,
        *,
        owner_id: int | None = None,
    ) -> tuple[PrintJob, bool]:
        """Apply a reported status.

        Returns the job and whether anything changed. Raises NotFound for an
        unknown job (or one not owned by ``owner_id``) and InvalidState for a
        transition out of a terminal state.
        """
        async with self._session_factory() as db:
            job = await self._load(db, job_id)
            if job is None or (owner_id is not None and job.user_id != owner_id):
                raise NotFound(f"Print job {job_id} not found")

            if job.status == status:
                logger.debug("Job %s already %s; ignoring duplicate report", job_id, status)
                return job, False

            if status not in ALLOWED_TRANSITIONS.get(job.status, frozenset()):
                raise InvalidState(f"Print job {job_id} cannot move from {job.status} to {status}")

            previous = job.status
            job.status = status
            if status == "failed":
                job.error_message = error or "Print failed"
            elif status == "completed":
                job.error_message = None
                job.completed_at = _utcnow()
                job.printer.last_print_time = job.completed_at
            await db.commit()

            logger.info("Job %s: %s -> %s", job_id, previous, status)
            return await self._load(db, job_id), True

    async def requeue(self, job_id: int, *, owner_id: int | None = None) -> PrintJob:
        """Put a failed job back in the ready set."""
        async with self._session_factory() as db:
            job = await self._load(db, job_id)
            if job is None or (owner_id is not None and job.user_id != owner_id):
                raise NotFound(f"Print job {job_id} not found")
            if job.status != "failed":
                raise InvalidState(f"Only failed jobs can be requeued (job {job_id} is {job.status})")

            job.status = "ready"
            job.error_message = None
            await db.commit()
            logger.info("Job %s requeued", job_id)
            return await self._load(db, job_id)

    async def delete(self, job_id: int, *, owner_id: int | None = None) -> None:
        async with self._session_factory() as db:
            job = await db.get(PrintJob, job_id)
            if job is None or (owner_id is not None and job.user_id != owner_id):
                raise NotFound(f"Print job {job_id} not found")
            if job.status == "processing":
                raise InvalidState(f"Print job {job_id} is being processed and cannot be deleted")
            await db.delete(job)
            await db.commit()
            logger.info("Job %s deleted", job_id)

    async def resolve_printer(self, printer_id: int | None = None, unique_id: str | None = None) -> Printer | None:
        async with self._session_factory() as db:
            if printer_id is not None:
                return await db.get(Printer, printer_id)
            if unique_id is not None:
                result = await db.execute(select(Printer).where(Printer.unique_id == unique_id))
                return result.scalar_one_or_none()
            return None

    @staticmethod
    async def _load(db: AsyncSession, job_id: int) -> PrintJob | None:
        result = await db.execute(
            select(PrintJob)
            .options(selectinload(PrintJob.printer))
            .where(PrintJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
