import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from agent_jobs.db.models import Job
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import JobEventType, JobStatus
from agent_jobs.commands.append_event import append_job_event
from agent_jobs.commands.heartbeat import live_worker_ids
from agent_jobs.api.v1.metrics import JOBS_RECLAIMED_TOTAL

logger = logging.getLogger(__name__)

async def _record_failures(session: AsyncSession, failed, error: str) -> None:
    """One `status: failed` event per (id, project_id) row, in the reclaim transaction."""
    for job_id, project_id in failed:
        await append_job_event(
            session,
            project_id=project_id,
            job_id=job_id,
            type=JobEventType.STATUS,
            message="failed",
            data={"error": error},
        )

REQUEUED_ERROR = "reclaimed: worker presumed dead"
EXHAUSTED_ERROR = "reclaimed: stale running job exceeded max attempts"
FALLBACK_REQUEUED_ERROR = "reclaimed: stale running job recovered by worker fallback"
FALLBACK_EXHAUSTED_ERROR = "reclaimed: stale running job exceeded max attempts (worker fallback)"

async def reclaim_stale_jobs(
    session: AsyncSession,
    stale_after: timedelta,
    retry_delay: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """
    Returns abandoned running jobs to the queue, or fails them when their
    attempts are spent. A job is abandoned once its lock is older than
    `stale_after`; there is no other crash signal.

    Each branch is a single UPDATE over a SKIP LOCKED subquery, so this is
    safe to run concurrently with claim_jobs and with itself.
    Returns number of jobs reclaimed.
    """
    now = now or utcnow()
    cutoff = now - stale_after

    def _stale(retriable: bool):
        stale = aliased(Job)
        attempts_clause = (
            stale.attempts < stale.max_attempts if retriable else stale.attempts >= stale.max_attempts
        )
        return (
            select(stale.id)
            .where(
                stale.status == JobStatus.RUNNING,
                stale.locked_at < cutoff,
                attempts_clause,
            )
            .with_for_update(skip_locked=True)
        )

    requeue_stmt = (
        update(Job)
        .where(Job.id.in_(_stale(retriable=True)))
        .values(
            status=JobStatus.QUEUED,
            locked_at=None,
            locked_by=None,
            run_after=now + retry_delay,
            last_error=REQUEUED_ERROR,
            completed_at=None,
            updated_at=now,
        )
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    requeued = (await session.execute(requeue_stmt)).scalars().all()

    fail_stmt = (
        update(Job)
        .where(Job.id.in_(_stale(retriable=False)))
        .values(
            status=JobStatus.FAILED,
            locked_at=None,
            locked_by=None,
            last_error=EXHAUSTED_ERROR,
            completed_at=now,
            updated_at=now,
        )
        .returning(Job.id, Job.project_id)
        .execution_options(synchronize_session=False)
    )
    failed = (await session.execute(fail_stmt)).all()
    await _record_failures(session, failed, EXHAUSTED_ERROR)

    count = len(requeued) + len(failed)
    if count:
        JOBS_RECLAIMED_TOTAL.labels(path="primary").inc(count)
        logger.info("Reclaimed %d stale jobs (%d requeued, %d failed)", count, len(requeued), len(failed))

    await session.flush()
    return count

async def reclaim_stale_jobs_fallback(
    session: AsyncSession,
    stale_after: timedelta,
    retry_delay: timedelta,
    heartbeat_stale_after: timedelta,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> int:
    """
    Client-side two-step variant of reclaim_stale_jobs for when the atomic
    path is unavailable: read stale rows, then update them by id.

    Rows locked by a worker with a fresh heartbeat are left alone. The
    update re-checks status and lock age, which narrows (but does not
    close) the window where a row is re-claimed between the two steps.
    """
    now = now or utcnow()
    cutoff = now - stale_after

    stmt = (
        select(Job.id, Job.attempts, Job.max_attempts, Job.locked_by)
        .where(
            Job.status == JobStatus.RUNNING,
            Job.locked_at < cutoff,
        )
        .order_by(Job.locked_at.asc())
        .limit(limit)
    )
    rows = (await session.execute(stmt)).all()
    if not rows:
        return 0

    alive = await live_worker_ids(session, heartbeat_stale_after, now=now)
    candidates = [r for r in rows if r.locked_by not in alive]
    if not candidates:
        return 0

    retriable_ids = [r.id for r in candidates if r.attempts < r.max_attempts]
    exhausted_ids = [r.id for r in candidates if r.attempts >= r.max_attempts]

    def _guarded(ids):
        return update(Job).where(
            Job.id.in_(ids),
            Job.status == JobStatus.RUNNING,
            Job.locked_at < cutoff,
        ).execution_options(synchronize_session=False)

    reclaimed = 0
    if retriable_ids:
        res = await session.execute(
            _guarded(retriable_ids).values(
                status=JobStatus.QUEUED,
                run_after=now + retry_delay,
                locked_at=None,
                locked_by=None,
                last_error=FALLBACK_REQUEUED_ERROR,
                completed_at=None,
                updated_at=now,
            )
        )
        reclaimed += res.rowcount

    if exhausted_ids:
        failed = (await session.execute(
            _guarded(exhausted_ids).values(
                status=JobStatus.FAILED,
                locked_at=None,
                locked_by=None,
                last_error=FALLBACK_EXHAUSTED_ERROR,
                completed_at=now,
                updated_at=now,
            ).returning(Job.id, Job.project_id)
        )).all()
        await _record_failures(session, failed, FALLBACK_EXHAUSTED_ERROR)
        reclaimed += len(failed)

    if reclaimed:
        JOBS_RECLAIMED_TOTAL.labels(path="fallback").inc(reclaimed)
        logger.info("Fallback reaper reclaimed %d stale jobs", reclaimed)

    await session.flush()
    return reclaimed
