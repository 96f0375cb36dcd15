"""
Outbox admin API endpoints.

Read-only job listing plus the two repair actions operators need: retrying
a dead-lettered job and canceling one that should never run. A separate
cron-triggered endpoint drains due jobs for deployments without a
long-running worker.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salesops.config.settings import Settings, SettingsDep
from salesops.infra.database import get_session, get_session_factory
from salesops.v1.core.exceptions import SalesOpsException, create_success_response
from salesops.v1.core.security import CronSecretDep, Principal, PrincipalDep
from salesops.v1.outbox.dispatcher import Dispatcher
from salesops.v1.outbox.models import JobStatus
from salesops.v1.outbox.schemas import (
    JobActionRequest,
    JobActionResponse,
    JobListFilters,
    JobResponse,
    JobRetryRequest,
)
from salesops.v1.outbox.service import OutboxAdminService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
outbox_router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: str | None = Query(default=None, description="Filter by job type"),
    page: int = Query(default=1, ge=1, description="1-based page number"),
    page_size: int = Query(default=50, ge=1, le=500, description="Results per page"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs, newest first, with filtering and pagination."""

    filters = JobListFilters(
        status=status, job_type=type, page=page, page_size=page_size
    )
    result = await OutboxAdminService(settings).list_jobs(session, filters)

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get queue statistics."""

    stats = await OutboxAdminService(settings).get_job_stats(session)
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await OutboxAdminService(settings).get_job(session, job_id)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    request: JobRetryRequest | None = Body(default=None),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Return a failed job to pending so the next poll picks it up."""

    reset_attempts = request.reset_attempts if request else False
    job = await OutboxAdminService(settings).retry_job(
        session, job_id, reset_attempts=reset_attempts
    )

    logger.info(
        "Job retried via API",
        extra={
            "job_id": str(job_id),
            "user_id": principal.user_id,
            "reset_attempts": reset_attempts,
        },
    )

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json"),
        message="Job queued for retry",
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a pending job."""

    job = await OutboxAdminService(settings).cancel_job(
        session, job_id, reason=f"requested by {principal.user_id}"
    )

    logger.info(
        "Job canceled via API",
        extra={"job_id": str(job_id), "user_id": principal.user_id},
    )

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/batch/retry", response_model=dict)
async def retry_jobs_batch(
    request: JobActionRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry multiple jobs in batch."""

    service = OutboxAdminService(settings)
    success_ids = []
    failed_ids = []
    errors = {}

    for job_id in request.job_ids:
        try:
            await service.retry_job(
                session, job_id, reset_attempts=request.reset_attempts
            )
            success_ids.append(job_id)
        except SalesOpsException as e:
            failed_ids.append(job_id)
            errors[str(job_id)] = e.message

    logger.info(
        "Batch job retry via API",
        extra={
            "success_count": len(success_ids),
            "failed_count": len(failed_ids),
            "user_id": principal.user_id,
        },
    )

    response = JobActionResponse(
        success_ids=success_ids, failed_ids=failed_ids, errors=errors
    )

    return create_success_response(data=response.model_dump(mode="json"))


def get_dispatcher(
    settings: Settings = SettingsDep,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Dispatcher:
    return Dispatcher(settings, session_factory)


@outbox_router.post("/run", response_model=dict, dependencies=[CronSecretDep])
async def run_outbox(
    max_duration_s: float | None = Query(
        default=None, gt=0, description="Override the drain time budget"
    ),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Drain due jobs once; called by an external scheduler."""

    result = await dispatcher.drain(max_duration_s)

    logger.info("Outbox drain finished", extra=result.model_dump())

    return create_success_response(data=result.model_dump())
