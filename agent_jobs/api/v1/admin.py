from datetime import timedelta

from fastapi import APIRouter

from agent_jobs.api.deps import DbSession
from agent_jobs.commands.reclaim_stale import reclaim_stale_jobs
from agent_jobs.settings import settings

router = APIRouter()

@router.post("/reclaim_stale")
async def trigger_reclaim_stale(session: DbSession):
    count = await reclaim_stale_jobs(
        session,
        stale_after=settings.stale_after,
        retry_delay=timedelta(milliseconds=settings.WORKER_RECLAIM_RETRY_DELAY_MS),
    )
    await session.commit()
    return {"reclaimed_count": count}
