import asyncio

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from agent_jobs.commands.enqueue_job import enqueue, enqueue_job, idempotency_key_for
from agent_jobs.db.models import Job
from agent_jobs.domain.states import SYSTEM_PROJECT_ID, AgentKey, JobStatus, JobType, Priority


async def _count(session_factory, **filters):
    async with session_factory() as session:
        stmt = select(func.count()).select_from(Job).filter_by(**filters)
        return await session.scalar(stmt)


async def test_enqueue_inserts_queued_job(session_factory, project_id):
    async with session_factory() as session:
        job_id = await enqueue_job(
            session,
            project_id=project_id,
            job_type=JobType.CHAT_REPLY,
            agent_key=AgentKey.CEO,
            payload={"message": "hi"},
            priority=Priority.REALTIME,
            max_attempts=5,
        )
        await session.commit()

    async with session_factory() as session:
        job = await session.get(Job, job_id)
    assert job.status == JobStatus.QUEUED
    assert job.priority == Priority.REALTIME
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.payload == {"message": "hi"}
    assert job.locked_by is None


async def test_same_key_returns_same_job(session_factory, project_id):
    async with session_factory() as session:
        first = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="k1")
        await session.commit()
    async with session_factory() as session:
        second = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {"other": 1}, idempotency_key="k1")
        await session.commit()

    assert first == second
    assert await _count(session_factory, idempotency_key="k1") == 1


async def test_completed_job_keeps_its_key(session_factory, project_id):
    async with session_factory() as session:
        first = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="done")
        await session.execute(update(Job).where(Job.id == first).values(status=JobStatus.COMPLETED))
        await session.commit()

    async with session_factory() as session:
        second = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="done")
        await session.commit()

    assert first == second


@pytest.mark.parametrize("terminal", [JobStatus.FAILED, JobStatus.CANCELED])
async def test_key_is_released_by_failure_or_cancel(session_factory, project_id, terminal):
    async with session_factory() as session:
        first = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="again")
        await session.execute(update(Job).where(Job.id == first).values(status=terminal))
        await session.commit()

    async with session_factory() as session:
        second = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="again")
        await session.commit()

    assert second != first
    assert await _count(session_factory, idempotency_key="again") == 2


async def test_key_is_scoped_per_project(session_factory, project_id):
    async with session_factory() as session:
        a = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="shared")
        b = await enqueue_job(session, SYSTEM_PROJECT_ID, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="shared")
        await session.commit()

    assert a != b


async def test_jobs_without_key_are_never_deduplicated(session_factory, project_id):
    async with session_factory() as session:
        a = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {})
        b = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {})
        await session.commit()

    assert a != b


async def test_unique_index_backs_up_the_precheck(session_factory, project_id):
    async with session_factory() as session:
        existing = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="race")
        await session.commit()

    # A producer that lost the race inserts past its own (stale) precheck
    async with session_factory() as session:
        session.add(Job(
            project_id=project_id,
            job_type="test.noop",
            agent_key=AgentKey.SYSTEM,
            payload={},
            idempotency_key="race",
        ))
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()

    assert await _count(session_factory, idempotency_key="race") == 1
    async with session_factory() as session:
        again = await enqueue_job(session, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="race")
    assert again == existing


async def test_enqueue_commits_in_own_session(session_factory, project_id):
    ids = await asyncio.gather(*[
        enqueue(session_factory, project_id, "test.noop", AgentKey.SYSTEM, {}, idempotency_key="parallel")
        for _ in range(3)
    ])

    assert len(set(ids)) == 1
    assert await _count(session_factory, idempotency_key="parallel") == 1


def test_idempotency_key_is_stable_and_order_insensitive_for_dicts():
    a = idempotency_key_for("email.process_due", {"b": 2, "a": 1})
    b = idempotency_key_for("email.process_due", {"a": 1, "b": 2})
    c = idempotency_key_for("email.process_due", {"a": 1, "b": 3})

    assert a == b
    assert a != c
    assert len(a) == 40
