import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from agent_jobs.db.models import Job
from agent_jobs.domain.models import JobRecord
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import JobStatus
from agent_jobs.api.v1.metrics import JOBS_CLAIMED_TOTAL, JOB_CLAIM_DELAY

logger = logging.getLogger(__name__)

async def claim_jobs(
    session: AsyncSession,
    worker_id: str,
    limit: int,
    now: Optional[datetime] = None,
) -> list[JobRecord]:
    """
    Atomically claims up to `limit` eligible queued jobs for the given worker.

    Selection and mutation happen in one statement:

        UPDATE agent_jobs SET status='running', locked_by=..., ...
        WHERE id IN (
            SELECT id FROM agent_jobs
            WHERE status='queued' AND run_after <= now
            ORDER BY priority DESC, created_at ASC
            LIMIT n FOR UPDATE SKIP LOCKED
        )
        RETURNING *

    SKIP LOCKED lets concurrent claimers pass over rows another transaction
    is already taking, so no two callers can ever receive the same row.

    The attempt counter is bumped here, so `attempts` counts claims.
    Caller owns the transaction and must commit before running handlers.
    """
    if limit <= 0:
        return []

    now = now or utcnow()
    candidate = aliased(Job)

    next_jobs = (
        select(candidate.id)
        .where(
            candidate.status == JobStatus.QUEUED,
            candidate.run_after <= now,
        )
        .order_by(
            candidate.priority.desc(),
            candidate.created_at.asc(),
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    stmt = (
        update(Job)
        .where(Job.id.in_(next_jobs))
        .values(
            status=JobStatus.RUNNING,
            locked_at=now,
            locked_by=worker_id,
            started_at=func.coalesce(Job.started_at, now),
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )

    result = await session.execute(stmt)
    rows = result.scalars().all()

    if not rows:
        return []

    # RETURNING order is unspecified
    rows = sorted(rows, key=lambda j: (-j.priority, j.created_at))

    JOBS_CLAIMED_TOTAL.inc(len(rows))
    for row in rows:
        run_after = row.run_after
        if run_after.tzinfo is None:
            # SQLite hands back naive UTC values
            run_after = run_after.replace(tzinfo=now.tzinfo)
        delay = (now - run_after).total_seconds()
        if delay >= 0:
            JOB_CLAIM_DELAY.observe(delay)

    logger.debug("Worker %s claimed %d jobs", worker_id, len(rows))
    return [JobRecord.from_row(row) for row in rows]
