import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from helpers import enqueue_job, load_job

from salesops.v1.outbox.models import JobStatus
from salesops.v1.outbox.store import truncate_error

LEASE = timedelta(seconds=30)


async def claim(session_factory, store, job_id, worker_id, now, reclaim_expired=False):
    async with session_factory() as session:
        async with session.begin():
            return await store.claim(
                session, job_id, worker_id, LEASE, now, reclaim_expired=reclaim_expired
            )


async def fail(session_factory, store, job, worker_id, now, retryable=True):
    async with session_factory() as session:
        async with session.begin():
            return await store.fail(
                session,
                job,
                worker_id,
                "boom",
                now,
                now + timedelta(minutes=1),
                retryable=retryable,
            )


async def test_enqueue_creates_pending_job(session_factory, store, clock):
    job_id = await enqueue_job(
        session_factory, store, payload={"key": "a"}, scheduled_for=clock.now
    )

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.job_type == "echo"
    assert job.payload == {"key": "a"}
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.scheduled_for == clock.now
    assert job.locked_until is None
    assert job.locked_by is None


async def test_enqueue_requires_job_type(db_session, store):
    with pytest.raises(ValueError, match="job_type is required"):
        await store.enqueue(db_session, "  ", {"key": "a"})


async def test_enqueue_is_invisible_until_commit(session_factory, store):
    async with session_factory() as writer:
        await writer.begin()
        job_id = await store.enqueue(writer, "echo", {"key": "a"})

        async with session_factory() as reader:
            assert await store.get(reader, job_id) is None

        await writer.rollback()

    async with session_factory() as reader:
        assert await store.get(reader, job_id) is None


async def fetch_due(session_factory, store, worker_id, limit, now):
    async with session_factory() as session:
        async with session.begin():
            return await store.fetch_due(session, worker_id, LEASE, limit, now)


async def test_fetch_due_skips_future_and_orders_by_schedule(
    session_factory, store, clock
):
    later = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    earlier = await enqueue_job(
        session_factory, store, scheduled_for=clock.now - timedelta(minutes=5)
    )
    future = await enqueue_job(
        session_factory, store, scheduled_for=clock.now + timedelta(minutes=5)
    )

    due = await fetch_due(session_factory, store, "worker-a", 10, clock.now)

    assert [job.job_id for job in due] == [earlier, later]
    assert {job.status for job in due} == {JobStatus.PROCESSING.value}
    assert {job.attempts for job in due} == {1}
    assert {job.locked_until for job in due} == {clock.now + LEASE}
    assert (await load_job(session_factory, store, future)).status == JobStatus.PENDING.value


async def test_fetch_due_respects_limit(session_factory, store, clock):
    for _ in range(3):
        await enqueue_job(session_factory, store, scheduled_for=clock.now)

    due = await fetch_due(session_factory, store, "worker-a", 2, clock.now)

    assert len(due) == 2
    async with session_factory() as session:
        counts = await store.count_by_status(session)
    assert counts == {JobStatus.PROCESSING.value: 2, JobStatus.PENDING.value: 1}


async def test_fetch_due_leaves_live_leases_alone(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    assert await claim(session_factory, store, job_id, "worker-a", clock.now)

    assert await fetch_due(session_factory, store, "worker-b", 10, clock.now) == []

    expired = clock.now + LEASE + timedelta(seconds=1)
    reclaimed = await fetch_due(session_factory, store, "worker-b", 10, expired)
    assert [job.job_id for job in reclaimed] == [job_id]
    assert reclaimed[0].attempts == 2
    assert reclaimed[0].locked_by == "worker-b"


async def test_concurrent_fetch_due_never_shares_a_job(session_factory, store, clock):
    for _ in range(3):
        await enqueue_job(session_factory, store, scheduled_for=clock.now)

    batches = await asyncio.gather(
        fetch_due(session_factory, store, "worker-a", 1, clock.now),
        fetch_due(session_factory, store, "worker-b", 1, clock.now),
    )

    leased = [job.job_id for batch in batches for job in batch]
    assert len(leased) == 2
    assert len(set(leased)) == 2
    async with session_factory() as session:
        counts = await store.count_by_status(session)
    assert counts == {JobStatus.PROCESSING.value: 2, JobStatus.PENDING.value: 1}


async def test_claim_sets_lease_and_counts_attempt(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    assert await claim(session_factory, store, job_id, "worker-a", clock.now)

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.locked_by == "worker-a"
    assert job.locked_until == clock.now + LEASE
    assert job.attempts == 1


async def test_second_claim_loses(session_factory, store, clock):
    """Two workers claiming the same job: exactly one wins."""
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    first = await claim(session_factory, store, job_id, "worker-a", clock.now)
    second = await claim(session_factory, store, job_id, "worker-b", clock.now)

    assert first is True
    assert second is False
    job = await load_job(session_factory, store, job_id)
    assert job.locked_by == "worker-a"
    assert job.attempts == 1


async def test_racing_claims_have_one_winner(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    results = await asyncio.gather(
        claim(session_factory, store, job_id, "worker-a", clock.now),
        claim(session_factory, store, job_id, "worker-b", clock.now),
    )

    assert sorted(results) == [False, True]
    job = await load_job(session_factory, store, job_id)
    assert job.attempts == 1
    assert job.locked_by == ("worker-a" if results[0] else "worker-b")


async def test_renew_requires_lease_holder(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    assert await claim(session_factory, store, job_id, "worker-a", clock.now)
    later = clock.now + timedelta(seconds=10)

    async with session_factory() as session:
        async with session.begin():
            assert not await store.renew(session, job_id, "worker-b", LEASE, later)
            assert await store.renew(session, job_id, "worker-a", LEASE, later)

    job = await load_job(session_factory, store, job_id)
    assert job.locked_until == later + LEASE


async def test_claim_rejects_job_not_yet_due(session_factory, store, clock):
    job_id = await enqueue_job(
        session_factory, store, scheduled_for=clock.now + timedelta(seconds=1)
    )
    assert not await claim(session_factory, store, job_id, "worker-a", clock.now)


async def test_expired_lease_reclaimed_only_when_allowed(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)

    still_leased = clock.now + timedelta(seconds=10)
    assert not await claim(
        session_factory, store, job_id, "worker-b", still_leased, reclaim_expired=True
    )

    expired = clock.now + timedelta(seconds=31)
    assert not await claim(session_factory, store, job_id, "worker-b", expired)
    assert await claim(
        session_factory, store, job_id, "worker-b", expired, reclaim_expired=True
    )

    job = await load_job(session_factory, store, job_id)
    assert job.locked_by == "worker-b"
    assert job.attempts == 2


async def test_complete_requires_lease_holder(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)

    async with session_factory() as session:
        async with session.begin():
            assert not await store.complete(session, job_id, "worker-b", clock.now)
            assert await store.complete(session, job_id, "worker-a", clock.now)

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.completed_at == clock.now
    assert job.locked_by is None
    assert job.locked_until is None


async def test_fail_reschedules_while_attempts_remain(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)
    job = await load_job(session_factory, store, job_id)

    status = await fail(session_factory, store, job, "worker-a", clock.now)

    assert status == JobStatus.PENDING
    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.scheduled_for == clock.now + timedelta(minutes=1)
    assert job.last_error == "boom"
    assert job.locked_by is None


async def test_permanent_failure_dead_letters_immediately(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)
    job = await load_job(session_factory, store, job_id)

    status = await fail(
        session_factory, store, job, "worker-a", clock.now, retryable=False
    )

    assert status == JobStatus.FAILED
    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1


async def test_fail_is_noop_for_stale_lease(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)
    stale = await load_job(session_factory, store, job_id)

    later = clock.now + timedelta(seconds=31)
    await claim(session_factory, store, job_id, "worker-b", later, reclaim_expired=True)

    assert await fail(session_factory, store, stale, "worker-a", later) is None
    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.locked_by == "worker-b"


async def test_attempts_never_exceed_max(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    now = clock.now

    for attempt in range(1, 6):
        assert await claim(session_factory, store, job_id, "worker-a", now)
        job = await load_job(session_factory, store, job_id)
        assert job.attempts == attempt
        status = await fail(session_factory, store, job, "worker-a", now)
        now += timedelta(hours=2)

    assert status == JobStatus.FAILED
    assert not await claim(session_factory, store, job_id, "worker-a", now)

    job = await load_job(session_factory, store, job_id)
    assert job.attempts == 5
    assert job.status == JobStatus.FAILED.value


async def test_release_expired_requeues_and_dead_letters(session_factory, store, clock):
    store.max_attempts = 1
    final_attempt = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    store.max_attempts = 5
    retryable = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    fresh_lease = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    await claim(session_factory, store, final_attempt, "worker-a", clock.now)
    await claim(session_factory, store, retryable, "worker-a", clock.now)
    later = clock.now + timedelta(seconds=31)
    await claim(session_factory, store, fresh_lease, "worker-b", later)

    async with session_factory() as session:
        async with session.begin():
            requeued, dead = await store.release_expired(session, later)

    assert (requeued, dead) == (1, 1)

    job = await load_job(session_factory, store, final_attempt)
    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "Lease expired during final attempt"

    job = await load_job(session_factory, store, retryable)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.locked_by is None

    job = await load_job(session_factory, store, fresh_lease)
    assert job.status == JobStatus.PROCESSING.value


async def test_retry_only_touches_failed_jobs(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    async with session_factory() as session:
        async with session.begin():
            assert not await store.retry(session, job_id, clock.now)

    await claim(session_factory, store, job_id, "worker-a", clock.now)
    job = await load_job(session_factory, store, job_id)
    await fail(session_factory, store, job, "worker-a", clock.now, retryable=False)

    async with session_factory() as session:
        async with session.begin():
            assert await store.retry(session, job_id, clock.now)

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.scheduled_for == clock.now
    assert job.attempts == 1


async def test_retry_exhausted_job_needs_reset(session_factory, store, clock):
    store.max_attempts = 1
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)
    await claim(session_factory, store, job_id, "worker-a", clock.now)
    job = await load_job(session_factory, store, job_id)
    await fail(session_factory, store, job, "worker-a", clock.now)

    async with session_factory() as session:
        async with session.begin():
            assert not await store.retry(session, job_id, clock.now)
            assert await store.retry(session, job_id, clock.now, reset_attempts=True)

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0


async def test_cancel_pending_job(session_factory, store, clock):
    job_id = await enqueue_job(session_factory, store, scheduled_for=clock.now)

    async with session_factory() as session:
        async with session.begin():
            assert await store.cancel(session, job_id, "duplicate order")
            assert not await store.cancel(session, job_id)

    job = await load_job(session_factory, store, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "Canceled: duplicate order"


async def test_list_jobs_filters_and_paginates(session_factory, store, clock):
    for _ in range(3):
        await enqueue_job(session_factory, store, "echo", scheduled_for=clock.now)
    other = await enqueue_job(session_factory, store, "other", scheduled_for=clock.now)

    async with session_factory() as session:
        jobs, total = await store.list_jobs(session, job_type="echo", limit=2)
        assert total == 3
        assert len(jobs) == 2
        assert all(job.job_type == "echo" for job in jobs)

        jobs, total = await store.list_jobs(
            session, statuses=[JobStatus.PENDING.value], limit=10, offset=0
        )
        assert total == 4
        # Newest first
        assert jobs[0].job_id == other

        counts = await store.count_by_type(session)
        assert counts == {"echo": 3, "other": 1}


async def test_get_unknown_job_returns_none(db_session, store):
    assert await store.get(db_session, uuid4()) is None


def test_truncate_error_keeps_short_messages():
    assert truncate_error("short", 100) == "short"

    long_error = "x" * 5000
    truncated = truncate_error(long_error, 100)
    assert len(truncated) == 100
    assert truncated.endswith("... [truncated]")

