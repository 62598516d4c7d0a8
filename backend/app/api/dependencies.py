from typing import Annotated

from fastapi import Depends, Request

from backend.app.services.container import Services
from backend.app.services.delivery_channel import DeliveryChannel
from backend.app.services.dispatch import DispatchService
from backend.app.services.job_store import JobStore


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatch(services: Annotated[Services, Depends(get_services)]) -> DispatchService:
    return services.dispatch


def get_job_store(services: Annotated[Services, Depends(get_services)]) -> JobStore:
    return services.job_store


def get_channel(services: Annotated[Services, Depends(get_services)]) -> DeliveryChannel:
    return services.channel
