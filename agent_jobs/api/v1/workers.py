from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select

from agent_jobs.api.deps import DbSession
from agent_jobs.db.models import Job, WorkerHeartbeat
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import JobStatus
from agent_jobs.settings import settings

router = APIRouter()

class WorkerHealth(BaseModel):
    worker_id: str
    service_name: str
    status: str
    started_at: Optional[datetime]
    last_seen_at: datetime
    age_seconds: int
    stale: bool
    jobs_processed: int
    consecutive_poll_errors: int
    rss_mb: Optional[float]
    vms_mb: Optional[float]
    details: dict[str, Any]

class WorkersHealthResponse(BaseModel):
    healthy: bool
    stale_after_seconds: int
    workers: list[WorkerHealth]
    failed_last_hour: int
    timed_out_last_hour: int

def _age_seconds(ts: datetime, now: datetime) -> int:
    if ts.tzinfo is None:
        # SQLite returns naive UTC values
        ts = ts.replace(tzinfo=now.tzinfo)
    return max(0, int((now - ts).total_seconds()))

@router.get("/health", response_model=WorkersHealthResponse)
async def workers_health(session: DbSession):
    now = utcnow()
    stale_after = settings.WORKER_HEARTBEAT_STALE_SECONDS
    hour_ago = now - timedelta(hours=1)

    beats = (
        await session.execute(select(WorkerHeartbeat).order_by(WorkerHeartbeat.last_seen_at.desc()))
    ).scalars().all()

    failed_q = select(func.count()).select_from(Job).where(
        Job.status == JobStatus.FAILED,
        Job.completed_at >= hour_ago,
    )
    failed = await session.scalar(failed_q) or 0
    timed_out = await session.scalar(failed_q.where(Job.last_error.like("%timed out after%"))) or 0

    workers = []
    for beat in beats:
        age = _age_seconds(beat.last_seen_at, now)
        workers.append(WorkerHealth(
            worker_id=beat.worker_id,
            service_name=beat.service_name,
            status=beat.status,
            started_at=beat.started_at,
            last_seen_at=beat.last_seen_at,
            age_seconds=age,
            stale=age > stale_after,
            jobs_processed=beat.jobs_processed,
            consecutive_poll_errors=beat.consecutive_poll_errors,
            rss_mb=beat.rss_mb,
            vms_mb=beat.vms_mb,
            details=beat.details or {},
        ))

    healthy = any(w.status == "running" and not w.stale for w in workers)
    return WorkersHealthResponse(
        healthy=healthy,
        stale_after_seconds=stale_after,
        workers=workers,
        failed_last_hour=failed,
        timed_out_last_hour=timed_out,
    )
