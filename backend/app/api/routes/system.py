"""System information and push-connection diagnostics."""

import platform
import sys
import time

import psutil
from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.dependencies import get_services
from backend.app.core.auth import AdminUser
from backend.app.core.config import APP_VERSION, settings
from backend.app.core.database import get_db
from backend.app.models.print_job import PrintJob
from backend.app.models.printer import Printer
from backend.app.models.user import User
from backend.app.schemas.system import ConnectionInfo, ConnectionStatus, PruneResponse
from backend.app.services.container import Services

router = APIRouter(prefix="/system", tags=["system"])

_started_at = time.time()


def format_bytes(bytes_value: int) -> str:
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if bytes_value < 1024:
            return f"{bytes_value:.1f} {unit}"
        bytes_value /= 1024
    return f"{bytes_value:.1f} PB"


def format_uptime(seconds: float) -> str:
    """Format uptime in seconds to human-readable string."""
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    return " ".join(parts) if parts else "< 1m"


@router.get("/info")
async def get_system_info(_: AdminUser, db: AsyncSession = Depends(get_db), services: Services = Depends(get_services)):
    """Process, database and dispatch statistics."""
    rows = await db.execute(select(PrintJob.status, func.count(PrintJob.id)).group_by(PrintJob.status))
    jobs_by_status = {status: count for status, count in rows.all()}
    printer_count = await db.scalar(select(func.count(Printer.id)))
    online_printers = await db.scalar(select(func.count(Printer.id)).where(Printer.status == "online"))
    user_count = await db.scalar(select(func.count(User.id)))

    process = psutil.Process()
    rss = process.memory_info().rss
    uptime_seconds = time.time() - _started_at

    return {
        "app": {
            "name": settings.app_name,
            "version": APP_VERSION,
            "uptime": format_uptime(uptime_seconds),
            "uptime_seconds": round(uptime_seconds),
        },
        "database": {
            "users": user_count,
            "printers": printer_count,
            "printers_online": online_printers,
            "jobs": jobs_by_status,
        },
        "dispatch": {
            "open_connections": services.connections.connection_count,
            "mapped_users": len(services.registry),
            "pending_pushes": services.dispatch.pending_pushes,
        },
        "system": {
            "python_version": sys.version.split()[0],
            "platform": platform.platform(),
            "memory_rss": rss,
            "memory_rss_formatted": format_bytes(rss),
        },
    }


@router.get("/connections", response_model=ConnectionStatus)
async def get_connections(_: AdminUser, services: Services = Depends(get_services)):
    """Snapshot of the user -> connection mapping."""
    connections = []
    for record in services.registry.active_users():
        session = services.channel.session(record.connection_id)
        connections.append(
            ConnectionInfo(
                user_id=record.user_id,
                username=record.username,
                connection_id=record.connection_id,
                connected=services.connections.is_connected(record.connection_id),
                state=session.state.value if session else None,
                connected_at=record.connected_at,
                last_activity=record.last_activity,
                in_flight=sorted(session.in_flight) if session else [],
            )
        )
    return ConnectionStatus(
        open_connections=services.connections.connection_count,
        mapped_users=len(connections),
        connections=connections,
    )


@router.post("/connections/prune", response_model=PruneResponse)
async def prune_connections(
    _: AdminUser,
    idle_seconds: float | None = Query(None, gt=0, description="Also drop mappings idle for longer than this"),
    services: Services = Depends(get_services),
):
    """Drop mappings whose connection is no longer open."""
    removed = services.registry.prune(idle_seconds=idle_seconds)
    return PruneResponse(removed_user_ids=removed, remaining=len(services.registry))
