from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_jobs.db.models import WorkerHeartbeat
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import WorkerStatus

# Statuses of a worker that may still hold claimed jobs
_ALIVE_STATUSES = (WorkerStatus.RUNNING, WorkerStatus.DRAINING)

async def record_heartbeat(
    session: AsyncSession,
    worker_id: str,
    status: WorkerStatus,
    jobs_processed: int,
    consecutive_poll_errors: int,
    rss_mb: Optional[float] = None,
    vms_mb: Optional[float] = None,
    started_at: Optional[datetime] = None,
    details: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> WorkerHeartbeat:
    """
    Upserts this worker's heartbeat row.
    Only the owning worker writes its row, so read-then-write does not race.
    """
    now = now or utcnow()

    beat = await session.get(WorkerHeartbeat, worker_id)
    if beat is None:
        beat = WorkerHeartbeat(worker_id=worker_id, started_at=started_at or now)
        session.add(beat)

    beat.status = status
    beat.last_seen_at = now
    beat.jobs_processed = jobs_processed
    beat.consecutive_poll_errors = consecutive_poll_errors
    beat.rss_mb = rss_mb
    beat.vms_mb = vms_mb
    beat.details = details or {}
    beat.updated_at = now
    if started_at is not None:
        beat.started_at = started_at

    await session.flush()
    return beat

async def live_worker_ids(
    session: AsyncSession,
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> set[str]:
    """Workers whose heartbeat is recent and who have not reported stopping."""
    now = now or utcnow()
    stmt = select(WorkerHeartbeat.worker_id).where(
        WorkerHeartbeat.last_seen_at >= now - stale_after,
        WorkerHeartbeat.status.in_(_ALIVE_STATUSES),
    )
    return set((await session.execute(stmt)).scalars().all())
