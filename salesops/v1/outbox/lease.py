"""
Lease manager: worker-side transactions over the job store.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salesops.config.settings import Settings
from salesops.infra.database import utc_now
from salesops.v1.outbox.backoff import BackoffPolicy
from salesops.v1.outbox.models import Job, JobStatus
from salesops.v1.outbox.store import JobStore

logger = logging.getLogger(__name__)


class LeaseManager:
    """
    Claim, complete and fail jobs, one short transaction per operation.

    A claim succeeds only on a due pending row or on a processing row whose
    lease has expired, so a crashed worker's job is picked up again once
    its lease runs out. The lease must outlive the handler timeout.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: JobStore,
        backoff: BackoffPolicy,
        lease_duration: timedelta,
        handler_timeout: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ):
        if lease_duration <= handler_timeout:
            raise ValueError(
                f"lease_duration ({lease_duration}) must exceed "
                f"handler_timeout ({handler_timeout})"
            )
        self.session_factory = session_factory
        self.store = store
        self.backoff = backoff
        self.lease_duration = lease_duration
        self.handler_timeout = handler_timeout
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> "LeaseManager":
        return cls(
            session_factory=session_factory,
            store=JobStore(
                max_attempts=settings.outbox_max_attempts,
                last_error_max_length=settings.outbox_last_error_max_length,
            ),
            backoff=BackoffPolicy.from_settings(settings),
            lease_duration=timedelta(seconds=settings.outbox_lease_duration_s),
            handler_timeout=timedelta(seconds=settings.outbox_handler_timeout_s),
            clock=clock,
        )

    async def claim_due(self, worker_id: str, limit: int) -> list[Job]:
        """Lease a batch of due jobs to worker_id; empty when nothing is due."""
        async with self.session_factory() as session:
            async with session.begin():
                return await self.store.fetch_due(
                    session, worker_id, self.lease_duration, limit, self.clock()
                )

    async def acquire(self, job_id: UUID, worker_id: str) -> Job | None:
        """Try to take the lease on one job. Returns the leased job, or None if we lost."""
        async with self.session_factory() as session:
            async with session.begin():
                claimed = await self.store.claim(
                    session,
                    job_id,
                    worker_id,
                    self.lease_duration,
                    self.clock(),
                    reclaim_expired=True,
                )
                if not claimed:
                    return None
                return await self.store.get(session, job_id)

    async def renew(self, job: Job, worker_id: str) -> bool:
        """Restart the lease clock before running a job that waited in a batch."""
        async with self.session_factory() as session:
            async with session.begin():
                renewed = await self.store.renew(
                    session, job.job_id, worker_id, self.lease_duration, self.clock()
                )

        if not renewed:
            logger.info(
                "Lease lost while job waited in batch",
                extra={"job_id": str(job.job_id), "worker_id": worker_id},
            )
        return renewed

    async def complete(self, job: Job, worker_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                completed = await self.store.complete(
                    session, job.job_id, worker_id, self.clock()
                )

        if not completed:
            logger.warning(
                "Lease lost before completion",
                extra={"job_id": str(job.job_id), "worker_id": worker_id},
            )
        return completed

    async def fail(
        self, job: Job, worker_id: str, error: str, retryable: bool = True
    ) -> JobStatus | None:
        """Record a failure; returns the job's new status or None if the lease was lost."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                new_status = await self.store.fail(
                    session,
                    job,
                    worker_id,
                    error,
                    now,
                    self.backoff.next_run_at(job.attempts, now),
                    retryable=retryable,
                )

        if new_status is None:
            logger.warning(
                "Lease lost before failure was recorded",
                extra={"job_id": str(job.job_id), "worker_id": worker_id},
            )
        return new_status

    async def release_expired(self) -> tuple[int, int]:
        async with self.session_factory() as session:
            async with session.begin():
                requeued, dead_lettered = await self.store.release_expired(
                    session, self.clock()
                )

        if requeued or dead_lettered:
            logger.warning(
                "Released expired leases",
                extra={"requeued": requeued, "dead_lettered": dead_lettered},
            )
        return requeued, dead_lettered
