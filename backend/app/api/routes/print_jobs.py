"""API routes for print job submission, pickup and status reporting."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from backend.app.api.dependencies import get_channel, get_dispatch, get_job_store
from backend.app.core.auth import CurrentUser
from backend.app.core.exceptions import InvalidState, NotFound
from backend.app.models.print_job import JOB_STATUSES, TERMINAL_STATUSES, PrintJob
from backend.app.models.user import User
from backend.app.schemas.print_job import (
    Base64PrintRequest,
    PrinterBrief,
    PrintJobDelivery,
    PrintJobResponse,
    PrintJobSubmitResponse,
    PrintRequest,
    RawPrintRequest,
    StatusUpdateRequest,
    StatusUpdateResponse,
    UrlPrintRequest,
)
from backend.app.services.delivery_channel import DeliveryChannel
from backend.app.services.dispatch import DispatchService, SubmitResult
from backend.app.services.job_store import JobStore, to_delivery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/print-jobs", tags=["print-jobs"])

Dispatch = Annotated[DispatchService, Depends(get_dispatch)]
Jobs = Annotated[JobStore, Depends(get_job_store)]
Channel = Annotated[DeliveryChannel, Depends(get_channel)]


def _owner_scope(user: User) -> int | None:
    """Admins act on any job; everyone else only on their own."""
    return None if user.is_admin else user.id


def _enrich_response(job: PrintJob) -> PrintJobResponse:
    response = PrintJobResponse.model_validate(job)
    if job.printer:
        response.printer_name = job.printer.name
    return response


def _submit_response(result: SubmitResult) -> PrintJobSubmitResponse:
    return PrintJobSubmitResponse(
        job_id=result.job_id,
        status=result.status,
        delivery=result.delivery.value,
        printer=PrinterBrief.model_validate(result.job.printer),
    )


async def _submit(dispatch: DispatchService, user: User, request: PrintRequest) -> PrintJobSubmitResponse:
    try:
        result = await dispatch.submit(user, request)
    except NotFound as e:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(e)) from e
    except InvalidState as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e)) from e
    return _submit_response(result)


@router.post("", response_model=PrintJobSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_url_job(data: UrlPrintRequest, current_user: CurrentUser, dispatch: Dispatch):
    """Submit a document the agent downloads from a URL."""
    return await _submit(dispatch, current_user, data)


@router.post("/base64", response_model=PrintJobSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_base64_job(data: Base64PrintRequest, current_user: CurrentUser, dispatch: Dispatch):
    """Submit an inline base64 document."""
    return await _submit(dispatch, current_user, data)


@router.post("/raw", response_model=PrintJobSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_raw_job(data: RawPrintRequest, current_user: CurrentUser, dispatch: Dispatch):
    """Submit raw device commands (ESC/POS, ZPL, ...)."""
    return await _submit(dispatch, current_user, data)


@router.get("/pending", response_model=list[PrintJobDelivery])
async def list_pending_jobs(current_user: CurrentUser, jobs: Jobs):
    """Pickup: every job of the caller still waiting for its agent."""
    ready = await jobs.list_ready(current_user.id)
    if ready:
        logger.debug("Pickup for user %s returned %s job(s)", current_user.id, len(ready))
    return [to_delivery(job) for job in ready]


@router.get("", response_model=list[PrintJobResponse])
async def list_jobs(
    current_user: CurrentUser,
    jobs: Jobs,
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    printer_id: int | None = Query(None, description="Filter by printer"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List own jobs (admins see everyone's)."""
    if status_filter is not None and status_filter not in JOB_STATUSES:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"Unknown status '{status_filter}'")
    items = await jobs.list_jobs(
        user_id=_owner_scope(current_user),
        status=status_filter,
        printer_id=printer_id,
        limit=limit,
        offset=offset,
    )
    return [_enrich_response(job) for job in items]


@router.get("/{job_id}", response_model=PrintJobResponse)
async def get_job(job_id: int, current_user: CurrentUser, jobs: Jobs):
    job = await jobs.get(job_id)
    owner = _owner_scope(current_user)
    if job is None or (owner is not None and job.user_id != owner):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Print job not found")
    return _enrich_response(job)


@router.put("/{job_id}/status", response_model=StatusUpdateResponse)
async def update_job_status(
    job_id: int, data: StatusUpdateRequest, current_user: CurrentUser, jobs: Jobs, channel: Channel
):
    """Report processing/completed/failed. Repeating a status is a no-op."""
    try:
        job, changed = await jobs.update_status(job_id, data.status, data.error, owner_id=_owner_scope(current_user))
    except NotFound as e:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(e)) from e
    except InvalidState as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e)) from e
    if job.status in TERMINAL_STATUSES:
        channel.job_settled(job.id)
    return StatusUpdateResponse(job=_enrich_response(job), changed=changed)


@router.post("/{job_id}/requeue", response_model=PrintJobSubmitResponse)
async def requeue_job(job_id: int, current_user: CurrentUser, dispatch: Dispatch):
    """Move a failed job back to ready and try to push it again."""
    try:
        result = await dispatch.requeue(job_id, owner_id=_owner_scope(current_user))
    except NotFound as e:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(e)) from e
    except InvalidState as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e)) from e
    return _submit_response(result)


@router.delete("/{job_id}")
async def delete_job(job_id: int, current_user: CurrentUser, jobs: Jobs):
    try:
        await jobs.delete(job_id, owner_id=_owner_scope(current_user))
    except NotFound as e:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(e)) from e
    except InvalidState as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e)) from e
    return {"message": "Print job deleted"}
