from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from salesops.config.logging import get_logger
from salesops.config.settings import Settings, SettingsDep
from salesops.infra.database import get_session
from salesops.v1.core.exceptions import create_success_response
from salesops.v1.outbox.models import Job, JobStatus

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class OutboxHealth(BaseModel):
    """Outbox queue status."""

    queue_depth: int = 0
    due_now: int = 0
    active_leases: int = 0
    expired_leases: int = 0
    active_workers: int = 0
    oldest_due_age_seconds: int | None = None


class HealthResponse(BaseModel):
    """Health response with database and outbox status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    outbox: OutboxHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and outbox status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    # Outbox stats are informational; a failing query does not fail health
    outbox_health = None
    if db_health.connected:
        try:
            outbox_health = await _check_outbox_health(session)
        except Exception as e:
            logger.warning("Outbox health check failed", error=str(e))
            outbox_health = OutboxHealth()

    health_data = HealthResponse(
        ok=overall_ok,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        outbox=outbox_health,
    )

    return create_success_response(data=health_data.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_outbox_health(session: AsyncSession) -> OutboxHealth:
    """Count queued work and leases from the outbox table."""
    now = datetime.now(UTC)

    async def count(*criteria) -> int:
        result = await session.execute(select(func.count(Job.job_id)).where(*criteria))
        return result.scalar() or 0

    queue_depth = await count(
        Job.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
    )
    due_now = await count(
        Job.status == JobStatus.PENDING.value, Job.scheduled_for <= now
    )
    active_leases = await count(
        Job.status == JobStatus.PROCESSING.value, Job.locked_until >= now
    )
    expired_leases = await count(
        Job.status == JobStatus.PROCESSING.value, Job.locked_until < now
    )

    # Distinct lease holders with a live lease
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            Job.status == JobStatus.PROCESSING.value, Job.locked_until >= now
        )
    )
    active_workers = active_workers_result.scalar() or 0

    oldest_due_result = await session.execute(
        select(func.min(Job.scheduled_for)).where(
            Job.status == JobStatus.PENDING.value, Job.scheduled_for <= now
        )
    )
    oldest_due = oldest_due_result.scalar()

    oldest_due_age_seconds = None
    if oldest_due:
        if oldest_due.tzinfo is None:
            oldest_due = oldest_due.replace(tzinfo=UTC)
        oldest_due_age_seconds = int((now - oldest_due).total_seconds())

    return OutboxHealth(
        queue_depth=queue_depth,
        due_now=due_now,
        active_leases=active_leases,
        expired_leases=expired_leases,
        active_workers=active_workers,
        oldest_due_age_seconds=oldest_due_age_seconds,
    )
