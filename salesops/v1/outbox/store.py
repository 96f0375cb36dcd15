"""
Job store: every read and conditional write against the outbox table.

Methods take the caller's session and never commit. Each mutation is a
single guarded UPDATE, so two workers racing on the same row can never
both succeed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from salesops.infra.database import utc_now
from salesops.v1.outbox.models import DEFAULT_MAX_ATTEMPTS, Job, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_LAST_ERROR_MAX_LENGTH = 2000


def truncate_error(error: str, max_length: int = DEFAULT_LAST_ERROR_MAX_LENGTH) -> str:
    """Bound error text so one noisy failure can't bloat the row."""
    if len(error) <= max_length:
        return error
    marker = "... [truncated]"
    return error[: max_length - len(marker)] + marker


def _claimable(now: datetime, reclaim_expired: bool = True, job=Job):
    """Rows a worker may take: due pending jobs, optionally expired leases."""
    fresh = and_(
        job.status == JobStatus.PENDING.value,
        job.scheduled_for <= now,
    )
    if reclaim_expired:
        expired = and_(
            job.status == JobStatus.PROCESSING.value,
            job.locked_until < now,
        )
        condition = or_(fresh, expired)
    else:
        condition = fresh
    return and_(condition, job.attempts < job.max_attempts)


class JobStore:
    """Persistence operations for outbox jobs."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        last_error_max_length: int = DEFAULT_LAST_ERROR_MAX_LENGTH,
    ):
        self.max_attempts = max_attempts
        self.last_error_max_length = last_error_max_length

    # Writes used by business code

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | BaseModel,
        scheduled_for: datetime | None = None,
    ) -> UUID:
        """
        Insert a pending job in the caller's transaction.

        The row is flushed, not committed: it becomes visible exactly when
        the business write it accompanies commits.
        """
        if not job_type or not job_type.strip():
            raise ValueError("job_type is required")

        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        now = utc_now()
        job = Job(
            job_id=uuid4(),
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            created_at=now,
            scheduled_for=scheduled_for or now,
        )
        session.add(job)
        await session.flush()

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.job_id),
                "job_type": job_type,
                "scheduled_for": job.scheduled_for.isoformat(),
            },
        )
        return job.job_id

    # Worker-side operations

    async def fetch_due(
        self,
        session: AsyncSession,
        worker_id: str,
        lease_duration: timedelta,
        limit: int,
        now: datetime,
    ) -> list[Job]:
        """
        Claim up to ``limit`` due jobs for worker_id in one statement.

        Candidates are picked with SELECT FOR UPDATE SKIP LOCKED and leased
        by the same UPDATE, so concurrent fetchers never get the same row
        back. Expired leases are included. Returns the leased jobs ordered
        by scheduled_for.
        """
        # Aliased so the subquery keeps its own FROM inside the UPDATE
        candidate = aliased(Job)
        candidates = (
            select(candidate.job_id)
            .where(_claimable(now, job=candidate))
            .order_by(candidate.scheduled_for, candidate.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(
            update(Job)
            .where(Job.job_id.in_(candidates), _claimable(now))
            .values(
                status=JobStatus.PROCESSING.value,
                locked_until=now + lease_duration,
                locked_by=worker_id,
                attempts=Job.attempts + 1,
            )
            .returning(Job.job_id)
            .execution_options(synchronize_session=False)
        )
        job_ids = list(result.scalars().all())
        if not job_ids:
            return []

        leased = await session.execute(
            select(Job)
            .where(Job.job_id.in_(job_ids))
            .order_by(Job.scheduled_for, Job.created_at)
        )
        return list(leased.scalars().all())

    async def claim(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str,
        lease_duration: timedelta,
        now: datetime,
        reclaim_expired: bool = False,
    ) -> bool:
        """
        Take the lease on a job and count the attempt.

        Returns False when the row no longer matches (another worker won,
        the job was rescheduled, or it is out of attempts).
        """
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, _claimable(now, reclaim_expired))
            .values(
                status=JobStatus.PROCESSING.value,
                locked_until=now + lease_duration,
                locked_by=worker_id,
                attempts=Job.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def renew(
        self,
        session: AsyncSession,
        job_id: UUID,
        worker_id: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> bool:
        """Push the lease out again. False if worker_id no longer holds it."""
        result = await session.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.PROCESSING.value,
                Job.locked_by == worker_id,
            )
            .values(locked_until=now + lease_duration)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete(
        self, session: AsyncSession, job_id: UUID, worker_id: str, now: datetime
    ) -> bool:
        """Mark a leased job completed. No-op unless worker_id holds the lease."""
        result = await session.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.PROCESSING.value,
                Job.locked_by == worker_id,
            )
            .values(
                status=JobStatus.COMPLETED.value,
                completed_at=now,
                locked_until=None,
                locked_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def fail(
        self,
        session: AsyncSession,
        job: Job,
        worker_id: str,
        error: str,
        now: datetime,
        next_run_at: datetime,
        retryable: bool = True,
    ) -> JobStatus | None:
        """
        Record a failed execution.

        Reschedules to next_run_at while attempts remain, otherwise (or when
        the failure is permanent) dead-letters. Guarded on the lease holder
        and the attempt count observed at claim time; returns None if the
        lease was lost in between.
        """
        if not retryable or job.attempts >= job.max_attempts:
            next_status = JobStatus.FAILED
            values: dict[str, Any] = {"status": next_status.value}
        else:
            next_status = JobStatus.PENDING
            values = {"status": next_status.value, "scheduled_for": next_run_at}

        values.update(
            last_error=truncate_error(error, self.last_error_max_length),
            locked_until=None,
            locked_by=None,
        )

        result = await session.execute(
            update(Job)
            .where(
                Job.job_id == job.job_id,
                Job.status == JobStatus.PROCESSING.value,
                Job.locked_by == worker_id,
                Job.attempts == job.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return next_status

    async def release_expired(
        self, session: AsyncSession, now: datetime
    ) -> tuple[int, int]:
        """
        Return jobs with expired leases to pending.

        A job whose expired lease belonged to its final attempt is
        dead-lettered instead, since it can never be claimed again.
        Returns (requeued, dead_lettered).
        """
        expired = and_(
            Job.status == JobStatus.PROCESSING.value,
            Job.locked_until < now,
        )

        dead = await session.execute(
            update(Job)
            .where(expired, Job.attempts >= Job.max_attempts)
            .values(
                status=JobStatus.FAILED.value,
                locked_until=None,
                locked_by=None,
                last_error="Lease expired during final attempt",
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await session.execute(
            update(Job)
            .where(expired, Job.attempts < Job.max_attempts)
            .values(
                status=JobStatus.PENDING.value,
                locked_until=None,
                locked_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        return requeued.rowcount, dead.rowcount

    # Admin operations

    async def get(self, session: AsyncSession, job_id: UUID) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(Job.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        statuses: list[str] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with the total matching count."""
        query = select(Job)
        if statuses:
            query = query.where(Job.status.in_(statuses))
        if job_type:
            query = query.where(Job.job_type == job_type)

        total_result = await session.execute(
            select(func.count()).select_from(query.subquery())
        )
        total = total_result.scalar() or 0

        jobs_result = await session.execute(
            query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(Job.status, func.count(Job.job_id)).group_by(Job.status)
        )
        return {status: count for status, count in result.all()}

    async def count_by_type(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(Job.job_type, func.count(Job.job_id)).group_by(Job.job_type)
        )
        return {job_type: count for job_type, count in result.all()}

    async def count_where(self, session: AsyncSession, *criteria) -> int:
        result = await session.execute(
            select(func.count(Job.job_id)).where(*criteria)
        )
        return result.scalar() or 0

    async def retry(
        self,
        session: AsyncSession,
        job_id: UUID,
        now: datetime,
        reset_attempts: bool = False,
    ) -> bool:
        """Return a failed job to pending, due immediately."""
        criteria = [Job.job_id == job_id, Job.status == JobStatus.FAILED.value]
        values: dict[str, Any] = {
            "status": JobStatus.PENDING.value,
            "scheduled_for": now,
            "locked_until": None,
            "locked_by": None,
        }
        if reset_attempts:
            values["attempts"] = 0
        else:
            criteria.append(Job.attempts < Job.max_attempts)

        result = await session.execute(
            update(Job)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel(
        self, session: AsyncSession, job_id: UUID, reason: str | None = None
    ) -> bool:
        """Withdraw a job that has not been claimed yet."""
        message = f"Canceled: {reason}" if reason else "Canceled by operator"
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, Job.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.FAILED.value,
                last_error=truncate_error(message, self.last_error_max_length),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
