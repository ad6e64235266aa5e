import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from agent_jobs.db.models import Job
from agent_jobs.domain.models import JobRecord
from agent_jobs.domain.retry import calculate_next_run, utcnow
from agent_jobs.domain.states import JobStatus
from agent_jobs.api.v1.metrics import JOB_OUTCOMES

logger = logging.getLogger(__name__)

def _owned_by(job_id: UUID, worker_id: str):
    # A job canceled or reclaimed since the claim no longer matches
    return (
        Job.id == job_id,
        Job.status == JobStatus.RUNNING,
        Job.locked_by == worker_id,
    )

async def finalize_job(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    status: JobStatus,
    error: Optional[str] = None,
    refund_attempt: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """
    Moves a running job into a terminal state and releases its lock.
    `refund_attempt` undoes the claim's attempt increment (unknown job type).
    Returns False when the job is no longer held by this worker.
    """
    now = now or utcnow()

    values = dict(
        status=status,
        last_error=error,
        locked_at=None,
        locked_by=None,
        completed_at=now,
        updated_at=now,
    )
    if refund_attempt:
        values["attempts"] = Job.attempts - 1

    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount == 0:
        logger.warning("Job %s no longer held by %s; dropping %s outcome", job_id, worker_id, status)
        return False

    JOB_OUTCOMES.labels(outcome=str(status)).inc()
    await session.flush()
    return True

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """Marks a job as COMPLETED."""
    return await finalize_job(session, job_id, worker_id, JobStatus.COMPLETED, now=now)

async def fail_job(
    session: AsyncSession,
    job: JobRecord,
    worker_id: str,
    error: str,
    base_delay_ms: int,
    now: Optional[datetime] = None,
) -> Optional[JobStatus]:
    """
    Records a failed attempt: requeues with backoff while attempts remain,
    otherwise finalizes as FAILED.

    `job.attempts` already includes the claim that just failed.
    Returns the resulting status, or None if the job was no longer held.
    """
    now = now or utcnow()

    if not job.retriable:
        done = await finalize_job(session, job.id, worker_id, JobStatus.FAILED, error=error, now=now)
        return JobStatus.FAILED if done else None

    next_run = calculate_next_run(job.attempts, base_delay_ms, now=now)
    stmt = (
        update(Job)
        .where(*_owned_by(job.id, worker_id))
        .values(
            status=JobStatus.QUEUED,
            run_after=next_run,
            locked_at=None,
            locked_by=None,
            last_error=error,
            completed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount == 0:
        logger.warning("Job %s no longer held by %s; dropping retry", job.id, worker_id)
        return None

    JOB_OUTCOMES.labels(outcome="requeued").inc()
    await session.flush()
    return JobStatus.QUEUED

async def release_jobs(
    session: AsyncSession,
    job_ids: Iterable[UUID],
    worker_id: str,
    now: Optional[datetime] = None,
) -> int:
    """
    Hands claimed jobs that never started back to the queue, refunding the
    claim's attempt. Used when the worker stops mid-batch.
    """
    ids = list(job_ids)
    if not ids:
        return 0

    now = now or utcnow()
    stmt = (
        update(Job)
        .where(
            Job.id.in_(ids),
            Job.status == JobStatus.RUNNING,
            Job.locked_by == worker_id,
        )
        .values(
            status=JobStatus.QUEUED,
            attempts=Job.attempts - 1,
            run_after=now,
            locked_at=None,
            locked_by=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    await session.flush()
    return res.rowcount
