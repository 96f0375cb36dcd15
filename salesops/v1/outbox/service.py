"""
Admin service for inspecting and repairing outbox jobs.
"""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from salesops.config.settings import Settings
from salesops.infra.database import utc_now
from salesops.v1.core.exceptions import ConflictError, NotFoundError
from salesops.v1.outbox.models import Job, JobStatus
from salesops.v1.outbox.schemas import (
    JobListFilters,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)
from salesops.v1.outbox.store import JobStore

logger = logging.getLogger(__name__)


class OutboxAdminService:
    """Read and retry surface behind the admin job pages."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = JobStore(
            max_attempts=settings.outbox_max_attempts,
            last_error_max_length=settings.outbox_last_error_max_length,
        )

    async def list_jobs(
        self, session: AsyncSession, filters: JobListFilters
    ) -> JobListResponse:
        statuses = [s.value for s in filters.status] if filters.status else None
        jobs, total = await self.store.list_jobs(
            session,
            statuses=statuses,
            job_type=filters.job_type,
            limit=filters.page_size,
            offset=filters.offset,
        )
        return JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    async def get_job(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await self.store.get(session, job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def get_job_stats(self, session: AsyncSession) -> JobStatsResponse:
        """Get job statistics for the dashboard."""
        now = utc_now()
        by_status = await self.store.count_by_status(session)
        by_type = await self.store.count_by_type(session)

        due_now = await self.store.count_where(
            session,
            Job.status == JobStatus.PENDING.value,
            Job.scheduled_for <= now,
        )
        expired_leases = await self.store.count_where(
            session,
            Job.status == JobStatus.PROCESSING.value,
            Job.locked_until < now,
        )
        # No updated_at column; failures are windowed by created_at
        failed_last_hour = await self.store.count_where(
            session,
            Job.status == JobStatus.FAILED.value,
            Job.created_at >= now - timedelta(hours=1),
        )

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            queue_depth=by_status.get(JobStatus.PENDING.value, 0)
            + by_status.get(JobStatus.PROCESSING.value, 0),
            due_now=due_now,
            expired_leases=expired_leases,
            failed_last_hour=failed_last_hour,
        )

    async def retry_job(
        self, session: AsyncSession, job_id: UUID, reset_attempts: bool = False
    ) -> Job:
        """
        Return a dead-lettered job to pending, due immediately.

        Attempts are kept unless reset_attempts is set, so a job that used
        up every attempt needs an explicit override to run again.
        """
        job = await self.get_job(session, job_id)

        if job.status != JobStatus.FAILED.value:
            raise ConflictError(
                f"Only failed jobs can be retried (status is {job.status})",
                details={"job_id": str(job_id), "status": job.status},
            )
        if not (job.can_retry() or reset_attempts):
            raise ConflictError(
                "Job has used all of its attempts; retry with reset_attempts",
                details={
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                },
            )

        retried = await self.store.retry(
            session, job_id, utc_now(), reset_attempts=reset_attempts
        )
        if not retried:
            await session.rollback()
            raise ConflictError(
                "Job changed while retrying", details={"job_id": str(job_id)}
            )
        await session.commit()

        logger.info(
            "Job retried",
            extra={"job_id": str(job_id), "reset_attempts": reset_attempts},
        )
        return await self.get_job(session, job_id)

    async def cancel_job(
        self, session: AsyncSession, job_id: UUID, reason: str | None = None
    ) -> Job:
        """Withdraw a pending job before any worker claims it."""
        job = await self.get_job(session, job_id)

        if job.status != JobStatus.PENDING.value:
            raise ConflictError(
                f"Only pending jobs can be canceled (status is {job.status})",
                details={"job_id": str(job_id), "status": job.status},
            )

        canceled = await self.store.cancel(session, job_id, reason)
        if not canceled:
            await session.rollback()
            raise ConflictError(
                "Job was claimed before it could be canceled",
                details={"job_id": str(job_id)},
            )
        await session.commit()

        logger.info("Job canceled", extra={"job_id": str(job_id)})
        return await self.get_job(session, job_id)
