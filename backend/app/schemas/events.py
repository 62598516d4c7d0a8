"""Push channel protocol.

Every frame is a JSON object with a ``type`` discriminator. Inbound events
flow from the print agent to the server, outbound events the other way.
"""

import time
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from backend.app.schemas.print_job import PrintJobDelivery, ReportedStatus


def _now_ms() -> int:
    return int(time.time() * 1000)


# Agent -> server


class AuthenticateEvent(BaseModel):
    type: Literal["authenticate"] = "authenticate"
    api_key: str | None = None


class HeartbeatEvent(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"


class JobReceivedEvent(BaseModel):
    """Receipt ack; says nothing about whether printing worked."""

    type: Literal["job-received"] = "job-received"
    job_id: int


class StatusUpdateEvent(BaseModel):
    type: Literal["status-update"] = "status-update"
    job_id: int
    status: ReportedStatus
    error: str | None = None


InboundEvent = Annotated[
    AuthenticateEvent | HeartbeatEvent | JobReceivedEvent | StatusUpdateEvent,
    Field(discriminator="type"),
]
inbound_event_adapter = TypeAdapter(InboundEvent)


# Server -> agent


class AuthenticatedEvent(BaseModel):
    type: Literal["authenticated"] = "authenticated"
    success: bool
    user_id: int | None = None
    username: str | None = None
    connection_id: str | None = None
    error: str | None = None


class AuthTimeoutEvent(BaseModel):
    type: Literal["auth_timeout"] = "auth_timeout"
    message: str = "Authentication timed out"


class JobReadyEvent(BaseModel):
    type: Literal["job-ready"] = "job-ready"
    job: PrintJobDelivery


class HeartbeatAckEvent(BaseModel):
    type: Literal["heartbeat-ack"] = "heartbeat-ack"
    timestamp: int = Field(default_factory=_now_ms)


class StatusAckEvent(BaseModel):
    type: Literal["status-ack"] = "status-ack"
    job_id: int
    status: str
    changed: bool


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    job_id: int | None = None


OutboundEvent = Annotated[
    AuthenticatedEvent | AuthTimeoutEvent | JobReadyEvent | HeartbeatAckEvent | StatusAckEvent | ErrorEvent,
    Field(discriminator="type"),
]
outbound_event_adapter = TypeAdapter(OutboundEvent)
