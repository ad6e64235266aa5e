from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from agent_jobs.db.models import Job
from agent_jobs.domain.errors import JobNotFoundError
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import JobEventType, JobStatus, TERMINAL_STATUSES
from agent_jobs.commands.append_event import append_job_event

async def cancel_job(
    session: AsyncSession,
    job_id: UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Cancels a job that has not reached a terminal state.

    A running handler is not interrupted; its outcome is discarded because
    finalization only applies to rows still locked by the worker.
    """
    now = now or utcnow()

    job = await session.get(Job, job_id, with_for_update=True)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in TERMINAL_STATUSES:
        return job

    job.status = JobStatus.CANCELED
    job.locked_at = None
    job.locked_by = None
    job.completed_at = now
    job.updated_at = now
    if reason:
        job.last_error = reason

    await append_job_event(
        session,
        project_id=job.project_id,
        job_id=job.id,
        type=JobEventType.STATUS,
        message="canceled",
        data={"reason": reason} if reason else None,
    )
    await session.flush()
    return job
