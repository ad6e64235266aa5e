from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from agent_jobs.db.models import JobEventLog
from agent_jobs.domain.models import PendingEvent
from agent_jobs.domain.retry import utcnow

async def append_job_event(
    session: AsyncSession,
    project_id: UUID,
    job_id: UUID,
    type: str,
    message: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
) -> JobEventLog:
    """Inserts one event inside the caller's transaction. Events are never updated."""
    event = JobEventLog(
        project_id=project_id,
        job_id=job_id,
        type=str(type),
        message=message,
        data=data or {},
        created_at=utcnow(),
    )
    session.add(event)
    await session.flush()
    return event

async def append_job_events(session: AsyncSession, events: Iterable[PendingEvent]) -> int:
    """Inserts a batch in the given order, preserving per-job ordering."""
    count = 0
    for pending in events:
        # One flush per row keeps autoincrement ids in list order
        await append_job_event(
            session,
            project_id=pending.project_id,
            job_id=pending.job_id,
            type=pending.type,
            message=pending.message,
            data=pending.data,
        )
        count += 1
    return count
