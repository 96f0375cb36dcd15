"""
Outbox dispatcher: a pool of polling workers coordinated only through the outbox table.
"""

import asyncio
import contextlib
import os
import socket
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salesops.config.logging import get_logger
from salesops.config.settings import Settings
from salesops.infra.database import utc_now
from salesops.v1.core.registries import JobRegistry, job_registry
from salesops.v1.outbox.lease import LeaseManager
from salesops.v1.outbox.models import Job, JobStatus
from salesops.v1.outbox.schemas import HandlerResult, OutboxRunResponse

logger = get_logger(__name__)


class UnknownJobType(Exception):
    """No handler is registered for the job's type."""


class InvalidPayload(Exception):
    """The job payload does not match its handler's schema."""


class JobOutcome(str, Enum):
    """What one poll did with one candidate job."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    LEASE_LOST = "lease_lost"  # another worker reclaimed it first


class Dispatcher:
    """
    Polling worker pool for outbox jobs.

    Each worker loop:
    - leases a batch of due jobs in one claim-on-write statement
    - renews the lease of each job that waited behind another
    - runs the registered handler under a hard timeout
    - records completion, a backoff retry, or a dead-letter

    A failing job never takes the loop down; errors are recorded on the
    job and the loop moves on. A recovery loop periodically returns jobs
    with expired leases to pending.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobRegistry = job_registry,
        lease_manager: LeaseManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.registry = registry
        self.leases = lease_manager or LeaseManager.from_settings(
            settings, session_factory, clock=clock
        )
        self.handler_timeout_s = self.leases.handler_timeout.total_seconds()
        self.batch_size = settings.outbox_batch_size
        self.poll_interval_s = settings.outbox_poll_interval_ms / 1000
        self.node_id = f"{socket.gethostname()}-{os.getpid()}"
        self.running = False
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def worker_id(self, index: int) -> str:
        return f"{self.node_id}-{index}"

    async def start(self) -> None:
        """Run the worker loops and the lease recovery loop until stopped."""
        if self.running:
            raise RuntimeError("Dispatcher is already running")

        self.running = True
        self._stopping.clear()
        concurrency = self.settings.outbox_worker_concurrency
        logger.info(
            "Starting outbox dispatcher",
            node_id=self.node_id,
            concurrency=concurrency,
            batch_size=self.batch_size,
            poll_interval_ms=self.settings.outbox_poll_interval_ms,
        )

        self._tasks = [
            asyncio.create_task(self._worker_loop(self.worker_id(i)))
            for i in range(concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._recovery_loop()))

        try:
            await asyncio.gather(*self._tasks)
        finally:
            self.running = False

    async def stop(self, timeout_s: float = 30.0) -> None:
        """Stop polling and give in-flight jobs time to finish."""
        logger.info("Stopping outbox dispatcher", node_id=self.node_id)
        self.running = False
        self._stopping.set()

        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Dispatcher stopped with jobs in flight",
                node_id=self.node_id,
                in_flight=len(pending),
            )
        self._tasks = []

    async def _worker_loop(self, worker_id: str) -> None:
        """Main worker loop that claims and processes jobs."""
        while self.running:
            try:
                outcomes = await self.poll_once(worker_id)
                if not outcomes:
                    await self._idle(self.poll_interval_s)

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in worker loop", worker_id=worker_id)
                await self._idle(max(self.poll_interval_s, 1.0))

    async def _recovery_loop(self) -> None:
        """Sweep expired leases left behind by crashed workers."""
        while self.running:
            try:
                await self.leases.release_expired()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in lease recovery")
            await self._idle(self.settings.outbox_recovery_interval_s)

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early when stop() is called."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def poll_once(self, worker_id: str) -> list[JobOutcome]:
        """One poll cycle: lease a batch of due jobs and process each in turn."""
        jobs = await self.leases.claim_due(worker_id, self.batch_size)
        outcomes = []

        for index, job in enumerate(jobs):
            # Later jobs in the batch have been waiting on earlier handlers
            if index and not await self.leases.renew(job, worker_id):
                outcomes.append(JobOutcome.LEASE_LOST)
                continue
            outcomes.append(await self.process(job, worker_id))

        return outcomes

    async def process(self, job: Job, worker_id: str) -> JobOutcome:
        """Run the handler for a leased job and record the outcome."""
        job_logger = logger.bind(
            worker_id=worker_id,
            job_id=str(job.job_id),
            job_type=job.job_type,
            attempt=job.attempts,
        )

        try:
            result = await self._execute(job)
        except UnknownJobType as e:
            result = HandlerResult.retry(str(e))
        except InvalidPayload as e:
            result = HandlerResult.permanent(str(e))
        except asyncio.TimeoutError:
            result = HandlerResult.retry(
                f"Handler timed out after {self.handler_timeout_s:g}s"
            )
        except Exception as e:
            job_logger.exception("Job handler raised")
            result = HandlerResult.retry(f"{type(e).__name__}: {e}")

        if result.success:
            if not await self.leases.complete(job, worker_id):
                return JobOutcome.LEASE_LOST
            job_logger.info("Job completed", result=result.data)
            return JobOutcome.COMPLETED

        error = result.error or "Handler reported failure"
        new_status = await self.leases.fail(
            job, worker_id, error, retryable=result.retryable
        )
        if new_status is None:
            return JobOutcome.LEASE_LOST
        if new_status == JobStatus.FAILED:
            job_logger.error(
                "Job moved to dead letter", error=error, retryable=result.retryable
            )
            return JobOutcome.DEAD_LETTERED

        job_logger.warning("Job scheduled for retry", error=error)
        return JobOutcome.RETRY_SCHEDULED

    async def _execute(self, job: Job) -> HandlerResult:
        if job.job_type not in self.registry:
            raise UnknownJobType(f"No handler registered for job type: {job.job_type}")
        handler = self.registry.get(job.job_type)

        try:
            payload = handler.payload_model.model_validate(job.payload)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid {job.job_type} payload: {e}") from e

        result = await asyncio.wait_for(
            handler.handle(payload), timeout=self.handler_timeout_s
        )
        if not isinstance(result, HandlerResult):
            raise TypeError(
                f"Handler for {job.job_type} returned {type(result).__name__}, "
                "expected HandlerResult"
            )
        return result

    async def drain(self, max_duration_s: float | None = None) -> OutboxRunResponse:
        """Process due jobs until the queue is idle or the time budget is spent."""
        budget = max_duration_s or self.settings.outbox_run_max_duration_s
        worker_id = self.worker_id(0)
        started = time.monotonic()
        counts = {outcome: 0 for outcome in JobOutcome}

        while time.monotonic() - started < budget:
            outcomes = await self.poll_once(worker_id)
            for outcome in outcomes:
                counts[outcome] += 1
            if not outcomes:
                break

        processed = (
            counts[JobOutcome.COMPLETED]
            + counts[JobOutcome.RETRY_SCHEDULED]
            + counts[JobOutcome.DEAD_LETTERED]
        )
        return OutboxRunResponse(
            processed=processed,
            completed=counts[JobOutcome.COMPLETED],
            retried=counts[JobOutcome.RETRY_SCHEDULED],
            dead_lettered=counts[JobOutcome.DEAD_LETTERED],
            skipped=counts[JobOutcome.LEASE_LOST],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
