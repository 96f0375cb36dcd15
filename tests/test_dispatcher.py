import asyncio
import time
from datetime import timedelta

import pytest
from helpers import EchoPayload, ScriptedHandler, enqueue_job, load_job

from salesops.v1.outbox.dispatcher import Dispatcher, JobOutcome
from salesops.v1.outbox.models import JobStatus
from salesops.v1.outbox.schemas import HandlerResult


@pytest.fixture
def handler(registry) -> ScriptedHandler:
    handler = ScriptedHandler()
    registry.register("echo", handler)
    return handler


@pytest.fixture
def dispatcher(settings, session_factory, registry, clock, handler) -> Dispatcher:
    return Dispatcher(settings, session_factory, registry=registry, clock=clock)


class SlowHandler:
    payload_model = EchoPayload

    async def handle(self, payload):
        await asyncio.sleep(5)
        return HandlerResult.ok()


class WrongResultHandler:
    payload_model = EchoPayload

    async def handle(self, payload):
        return {"sent": True}


async def test_fail_fail_succeed(dispatcher, handler, session_factory, store, clock):
    """Two failures back off 1m then 2m; the third attempt completes the job."""
    handler.results = [
        HandlerResult.retry("smtp unavailable"),
        RuntimeError("connection reset"),
    ]
    started = clock.now
    job_id = await enqueue_job(session_factory, store, scheduled_for=started)

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.RETRY_SCHEDULED]
    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.scheduled_for == started + timedelta(minutes=1)
    assert job.last_error == "smtp unavailable"

    # Not due yet
    assert await dispatcher.poll_once("worker-0") == []

    clock.advance(minutes=1)
    assert await dispatcher.poll_once("worker-0") == [JobOutcome.RETRY_SCHEDULED]
    job = await load_job(session_factory, store, job_id)
    assert job.attempts == 2
    assert job.scheduled_for == started + timedelta(minutes=3)
    assert job.last_error == "RuntimeError: connection reset"

    clock.advance(minutes=2)
    assert await dispatcher.poll_once("worker-0") == [JobOutcome.COMPLETED]
    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 3
    assert job.completed_at == clock.now
    assert job.locked_by is None
    assert len(handler.calls) == 3


async def test_dead_letters_after_max_attempts(
    dispatcher, handler, session_factory, store, clock
):
    handler.results = [HandlerResult.retry(f"failure {i}") for i in range(1, 7)]
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    outcomes = []
    for _ in range(5):
        outcomes.extend(await dispatcher.poll_once("worker-0"))
        clock.advance(hours=2)

    assert outcomes == [JobOutcome.RETRY_SCHEDULED] * 4 + [JobOutcome.DEAD_LETTERED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 5
    assert job.last_error == "failure 5"
    scheduled_for = job.scheduled_for

    # Never picked up again
    clock.advance(days=1)
    assert await dispatcher.poll_once("worker-0") == []
    job = await load_job(session_factory, store, job_id)
    assert job.scheduled_for == scheduled_for
    assert len(handler.calls) == 5


async def test_permanent_failure_dead_letters_on_first_attempt(
    dispatcher, handler, session_factory, store
):
    handler.results = [HandlerResult.permanent("Malformed recipient address")]
    job_id = await enqueue_job(session_factory, store)

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.DEAD_LETTERED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert job.last_error == "Malformed recipient address"


async def test_three_jobs_two_workers_batch_one(
    settings, session_factory, registry, clock, handler, store
):
    """Two workers polling at once each lease a different job; one stays pending."""
    dispatcher = Dispatcher(
        settings.model_copy(update={"outbox_batch_size": 1}),
        session_factory,
        registry=registry,
        clock=clock,
    )
    for key in ("a", "b", "c"):
        await enqueue_job(session_factory, store, payload={"key": key})

    first, second = await asyncio.gather(
        dispatcher.poll_once(dispatcher.worker_id(0)),
        dispatcher.poll_once(dispatcher.worker_id(1)),
    )

    assert first == [JobOutcome.COMPLETED]
    assert second == [JobOutcome.COMPLETED]
    keys = [call.key for call in handler.calls]
    assert len(keys) == 2
    assert len(set(keys)) == 2

    async with session_factory() as session:
        counts = await store.count_by_status(session)
    assert counts == {JobStatus.COMPLETED.value: 2, JobStatus.PENDING.value: 1}

    # The next cycle drains the last one
    assert await dispatcher.poll_once(dispatcher.worker_id(0)) == [JobOutcome.COMPLETED]
    assert await dispatcher.poll_once(dispatcher.worker_id(1)) == []
    assert sorted(call.key for call in handler.calls) == ["a", "b", "c"]


async def test_concurrent_workers_never_run_a_job_twice(
    dispatcher, handler, session_factory, store
):
    for key in ("a", "b", "c", "d", "e"):
        await enqueue_job(session_factory, store, payload={"key": key})

    results = await asyncio.gather(
        *(dispatcher.poll_once(dispatcher.worker_id(i)) for i in range(4))
    )

    outcomes = [outcome for result in results for outcome in result]
    assert outcomes.count(JobOutcome.COMPLETED) == 5
    assert sorted(call.key for call in handler.calls) == ["a", "b", "c", "d", "e"]


class HookHandler:
    """Runs a callback on the first call, then succeeds."""

    payload_model = EchoPayload

    def __init__(self, hook):
        self.hook = hook
        self.calls: list[EchoPayload] = []

    async def handle(self, payload):
        self.calls.append(payload)
        if len(self.calls) == 1:
            await self.hook()
        return HandlerResult.ok()


async def test_batched_job_reclaimed_while_waiting_is_not_run(
    dispatcher, registry, session_factory, store, clock
):
    await enqueue_job(
        session_factory, store, payload={"key": "a"}, scheduled_for=clock.now - timedelta(seconds=1)
    )
    waiting = await enqueue_job(
        session_factory, store, payload={"key": "b"}, scheduled_for=clock.now
    )

    async def stall_past_lease():
        clock.advance(seconds=31)
        assert await dispatcher.leases.acquire(waiting, "worker-b") is not None

    stalling = HookHandler(stall_past_lease)
    registry.register("echo", stalling)

    outcomes = await dispatcher.poll_once("worker-a")

    assert outcomes == [JobOutcome.COMPLETED, JobOutcome.LEASE_LOST]
    assert [call.key for call in stalling.calls] == ["a"]
    job = await load_job(session_factory, store, waiting)
    assert job.status == JobStatus.PROCESSING.value
    assert job.locked_by == "worker-b"


async def test_crashed_worker_job_completes_after_lease_expiry(
    dispatcher, handler, session_factory, store, clock
):
    job_id = await enqueue_job(session_factory, store)
    crashed = await dispatcher.leases.acquire(job_id, "worker-crashed")

    assert await dispatcher.poll_once("worker-0") == []

    clock.advance(seconds=31)
    assert await dispatcher.poll_once("worker-0") == [JobOutcome.COMPLETED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2
    assert await dispatcher.leases.complete(crashed, "worker-crashed") is False


async def test_handler_timeout_is_retryable(
    settings, session_factory, registry, clock, store
):
    registry.register("slow", SlowHandler())
    dispatcher = Dispatcher(
        settings.model_copy(update={"outbox_handler_timeout_s": 0.05}),
        session_factory,
        registry=registry,
        clock=clock,
    )
    job_id = await enqueue_job(session_factory, store, job_type="slow")

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.RETRY_SCHEDULED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.last_error == "Handler timed out after 0.05s"


async def test_unknown_job_type_is_retryable(dispatcher, session_factory, store):
    job_id = await enqueue_job(session_factory, store, job_type="not_registered")

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.RETRY_SCHEDULED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.last_error == "No handler registered for job type: not_registered"


async def test_invalid_payload_dead_letters(dispatcher, handler, session_factory, store):
    job_id = await enqueue_job(session_factory, store, payload={"unexpected": 1})

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.DEAD_LETTERED]

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.last_error.startswith("Invalid echo payload")
    assert handler.calls == []


async def test_non_result_return_is_retryable(
    dispatcher, registry, session_factory, store
):
    registry.register("wrong", WrongResultHandler())
    job_id = await enqueue_job(session_factory, store, job_type="wrong")

    assert await dispatcher.poll_once("worker-0") == [JobOutcome.RETRY_SCHEDULED]

    job = await load_job(session_factory, store, job_id)
    assert job.last_error.startswith("TypeError: Handler for wrong returned dict")


async def test_failing_job_does_not_block_batch(
    dispatcher, handler, session_factory, store, clock
):
    handler.results = [ValueError("bad data")]
    first = await enqueue_job(
        session_factory, store, payload={"key": "a"}, scheduled_for=clock.now - timedelta(seconds=1)
    )
    second = await enqueue_job(
        session_factory, store, payload={"key": "b"}, scheduled_for=clock.now
    )

    outcomes = await dispatcher.poll_once("worker-0")

    assert outcomes == [JobOutcome.RETRY_SCHEDULED, JobOutcome.COMPLETED]
    assert (await load_job(session_factory, store, first)).status == JobStatus.PENDING.value
    assert (await load_job(session_factory, store, second)).status == JobStatus.COMPLETED.value


async def test_long_errors_are_truncated(
    settings, session_factory, registry, clock, handler, store
):
    handler.results = [HandlerResult.retry("x" * 10_000)]
    dispatcher = Dispatcher(
        settings.model_copy(update={"outbox_last_error_max_length": 100}),
        session_factory,
        registry=registry,
        clock=clock,
    )
    job_id = await enqueue_job(session_factory, store)

    await dispatcher.poll_once("worker-0")

    job = await load_job(session_factory, store, job_id)
    assert len(job.last_error) == 100
    assert job.last_error.endswith("... [truncated]")


async def test_drain_reports_counts(dispatcher, handler, session_factory, store):
    handler.results = [HandlerResult.permanent("rejected"), HandlerResult.retry("busy")]
    for key in ("a", "b", "c"):
        await enqueue_job(session_factory, store, payload={"key": key})

    result = await dispatcher.drain(max_duration_s=5)

    assert result.processed == 3
    assert result.completed == 1
    assert result.retried == 1
    assert result.dead_lettered == 1
    assert result.skipped == 0

    # Rescheduled job is not due inside the same drain
    assert len(handler.calls) == 3


async def test_start_and_stop_process_jobs(
    settings, session_factory, registry, handler, store
):
    dispatcher = Dispatcher(
        settings.model_copy(update={"outbox_recovery_interval_s": 0.05}),
        session_factory,
        registry=registry,
    )
    job_id = await enqueue_job(session_factory, store)

    task = asyncio.create_task(dispatcher.start())
    try:
        for _ in range(300):
            job = await load_job(session_factory, store, job_id)
            if job.status == JobStatus.COMPLETED.value:
                break
            await asyncio.sleep(0.01)
    finally:
        await dispatcher.stop(timeout_s=5)
        await task

    assert job.status == JobStatus.COMPLETED.value
    assert dispatcher.running is False


async def test_start_twice_is_rejected(dispatcher):
    dispatcher.running = True
    with pytest.raises(RuntimeError, match="already running"):
        await dispatcher.start()


async def test_stop_interrupts_idle_loops(settings, session_factory, registry, handler):
    dispatcher = Dispatcher(
        settings.model_copy(
            update={"outbox_recovery_interval_s": 60, "outbox_poll_interval_ms": 60_000}
        ),
        session_factory,
        registry=registry,
    )

    task = asyncio.create_task(dispatcher.start())
    await asyncio.sleep(0.1)

    started = time.monotonic()
    await dispatcher.stop(timeout_s=5)
    await task

    assert time.monotonic() - started < 2
    assert dispatcher.running is False
