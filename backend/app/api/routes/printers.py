import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import delete as sql_delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.dependencies import get_job_store
from backend.app.core.auth import AdminUser, CurrentUser
from backend.app.core.database import get_db
from backend.app.models.print_job import PrintJob
from backend.app.models.printer import Printer
from backend.app.schemas.print_job import PrintJobDelivery
from backend.app.schemas.printer import (
    PrinterCreate,
    PrinterResponse,
    PrinterSyncRequest,
    PrinterSyncResponse,
    PrinterUpdate,
)
from backend.app.services.job_store import JobStore, to_delivery

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/printers", tags=["printers"])


async def _get_by_unique_id(db: AsyncSession, unique_id: str) -> Printer:
    result = await db.execute(select(Printer).where(Printer.unique_id == unique_id))
    printer = result.scalar_one_or_none()
    if not printer:
        raise HTTPException(404, "Printer not found")
    return printer


@router.get("/", response_model=list[PrinterResponse])
async def list_printers(_: CurrentUser, db: AsyncSession = Depends(get_db)):
    """List all configured printers."""
    result = await db.execute(select(Printer).order_by(Printer.name))
    return list(result.scalars().all())


@router.post("/", response_model=PrinterResponse, status_code=201)
async def create_printer(printer_data: PrinterCreate, _: AdminUser, db: AsyncSession = Depends(get_db)):
    """Add a new printer."""
    result = await db.execute(select(Printer).where(Printer.unique_id == printer_data.unique_id))
    if result.scalar_one_or_none():
        raise HTTPException(400, "Printer with this unique id already exists")

    printer = Printer(**printer_data.model_dump())
    db.add(printer)
    await db.commit()
    await db.refresh(printer)
    logger.info(f"Created printer {printer.name} ({printer.unique_id})")
    return printer


@router.post("/sync", response_model=PrinterSyncResponse)
async def sync_printers(data: PrinterSyncRequest, current_user: CurrentUser, db: AsyncSession = Depends(get_db)):
    """Upsert the printers an agent sees on its host and mark them online."""
    created = updated = 0
    synced = []
    for item in data.printers:
        result = await db.execute(select(Printer).where(Printer.unique_id == item.unique_id))
        printer = result.scalar_one_or_none()
        if printer is None:
            printer = Printer(**item.model_dump(), status="online")
            db.add(printer)
            created += 1
        else:
            printer.name = item.name
            if item.model is not None:
                printer.model = item.model
            if item.location is not None:
                printer.location = item.location
            printer.status = "online"
            updated += 1
        synced.append(printer)

    await db.commit()
    for printer in synced:
        await db.refresh(printer)

    logger.info(f"User {current_user.username} synced {len(synced)} printer(s): {created} new, {updated} updated")
    return PrinterSyncResponse(created=created, updated=updated, printers=synced)


@router.get("/{printer_id}", response_model=PrinterResponse)
async def get_printer(printer_id: int, _: CurrentUser, db: AsyncSession = Depends(get_db)):
    """Get a specific printer."""
    printer = await db.get(Printer, printer_id)
    if not printer:
        raise HTTPException(404, "Printer not found")
    return printer


@router.patch("/{printer_id}", response_model=PrinterResponse)
async def update_printer(
    printer_id: int,
    printer_data: PrinterUpdate,
    _: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Update a printer."""
    printer = await db.get(Printer, printer_id)
    if not printer:
        raise HTTPException(404, "Printer not found")

    for field, value in printer_data.model_dump(exclude_unset=True).items():
        setattr(printer, field, value)

    await db.commit()
    await db.refresh(printer)
    return printer


@router.delete("/{printer_id}")
async def delete_printer(printer_id: int, _: AdminUser, db: AsyncSession = Depends(get_db)):
    """Delete a printer together with its jobs."""
    printer = await db.get(Printer, printer_id)
    if not printer:
        raise HTTPException(404, "Printer not found")

    # SQLite doesn't enforce FK cascades, so do it explicitly
    await db.execute(sql_delete(PrintJob).where(PrintJob.printer_id == printer_id))
    await db.delete(printer)
    await db.commit()
    logger.info(f"Deleted printer {printer_id}")
    return {"status": "deleted"}


@router.post("/{unique_id}/connect", response_model=PrinterResponse)
async def connect_printer(unique_id: str, _: CurrentUser, db: AsyncSession = Depends(get_db)):
    """Mark a printer online (reported by the agent)."""
    printer = await _get_by_unique_id(db, unique_id)
    printer.status = "online"
    await db.commit()
    await db.refresh(printer)
    return printer


@router.post("/{unique_id}/disconnect", response_model=PrinterResponse)
async def disconnect_printer(unique_id: str, _: CurrentUser, db: AsyncSession = Depends(get_db)):
    """Mark a printer offline; new submissions to it are rejected."""
    printer = await _get_by_unique_id(db, unique_id)
    printer.status = "offline"
    await db.commit()
    await db.refresh(printer)
    return printer


@router.get("/{unique_id}/jobs", response_model=list[PrintJobDelivery])
async def list_printer_jobs(
    unique_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    jobs: JobStore = Depends(get_job_store),
):
    """Pending and ready jobs targeting one printer."""
    printer = await _get_by_unique_id(db, unique_id)
    items = await jobs.list_for_printer(printer.id)
    if not current_user.is_admin:
        items = [job for job in items if job.user_id == current_user.id]
    return [to_delivery(job) for job in items]
