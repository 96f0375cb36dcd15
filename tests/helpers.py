"""Shared test doubles for outbox tests."""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from salesops.v1.outbox.schemas import HandlerResult
from salesops.v1.outbox.store import JobStore

CRON_SECRET = "test-cron-secret"


class FakeClock:
    """Settable clock so lease and backoff timing can be stepped in tests.

    Starts a minute ahead of wall time so jobs enqueued with the default
    schedule are already due.
    """

    def __init__(self, start: datetime | None = None):
        self.now = start or (
            datetime.now(UTC).replace(microsecond=0) + timedelta(minutes=1)
        )

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class EchoPayload(BaseModel):
    key: str


class ScriptedHandler:
    """Handler that returns queued results in order, then succeeds."""

    payload_model = EchoPayload

    def __init__(self, results: list[HandlerResult | Exception] | None = None):
        self.results = list(results or [])
        self.calls: list[EchoPayload] = []

    async def handle(self, payload: EchoPayload) -> HandlerResult:
        self.calls.append(payload)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return HandlerResult.ok(key=payload.key)


async def enqueue_job(
    session_factory,
    store: JobStore,
    job_type: str = "echo",
    payload: dict | None = None,
    scheduled_for: datetime | None = None,
):
    """Commit one job and return its id."""
    async with session_factory() as session:
        async with session.begin():
            return await store.enqueue(
                session, job_type, payload or {"key": "k"}, scheduled_for
            )


async def load_job(session_factory, store: JobStore, job_id):
    async with session_factory() as session:
        return await store.get(session, job_id)
