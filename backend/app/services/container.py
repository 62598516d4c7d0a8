from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.auth import ApiKeyResolver
from backend.app.core.config import settings
from backend.app.core.websocket import ConnectionManager
from backend.app.services.connection_registry import ConnectionRegistry
from backend.app.services.delivery_channel import DeliveryChannel
from backend.app.services.dispatch import DispatchService
from backend.app.services.job_store import JobStore


@dataclass(slots=True)
class Services:
    connections: ConnectionManager
    registry: ConnectionRegistry
    job_store: JobStore
    channel: DeliveryChannel
    dispatch: DispatchService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    auth_timeout: float | None = None,
    receipt_grace: float | None = None,
) -> Services:
    """Wire the dispatch core around one session factory."""
    connections = ConnectionManager()
    registry = ConnectionRegistry(connections)
    job_store = JobStore(session_factory)
    channel = DeliveryChannel(
        connections=connections,
        registry=registry,
        job_store=job_store,
        resolve_credential=ApiKeyResolver(session_factory),
        auth_timeout=settings.ws_auth_timeout_seconds if auth_timeout is None else auth_timeout,
        receipt_grace=settings.receipt_grace_seconds if receipt_grace is None else receipt_grace,
    )
    dispatch = DispatchService(job_store=job_store, registry=registry, channel=channel)
    return Services(
        connections=connections,
        registry=registry,
        job_store=job_store,
        channel=channel,
        dispatch=dispatch,
    )
