from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from agent_jobs.api.deps import DbSession
from agent_jobs.commands.cancel_job import cancel_job
from agent_jobs.commands.enqueue_job import enqueue_job
from agent_jobs.db.models import Job, JobEventLog
from agent_jobs.domain.errors import EnqueueError, JobNotFoundError
from agent_jobs.domain.states import Priority

router = APIRouter()

class JobCreate(BaseModel):
    project_id: UUID
    job_type: str
    agent_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Priority.DEFAULT
    idempotency_key: Optional[str] = None
    run_after: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)

class JobResponse(BaseModel):
    id: UUID
    project_id: UUID
    job_type: str
    agent_key: str
    status: str
    priority: int
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    idempotency_key: Optional[str] = None
    run_after: datetime
    locked_by: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class JobEventResponse(BaseModel):
    id: int
    project_id: UUID
    job_id: UUID
    type: str
    message: Optional[str]
    data: dict[str, Any]
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class CancelRequest(BaseModel):
    reason: Optional[str] = None

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, session: DbSession):
    try:
        job_id = await enqueue_job(
            session,
            project_id=body.project_id,
            job_type=body.job_type,
            agent_key=body.agent_key,
            payload=body.payload,
            idempotency_key=body.idempotency_key,
            priority=body.priority,
            run_after=body.run_after,
            max_attempts=body.max_attempts,
        )
    except EnqueueError as e:
        await session.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    await session.commit()
    return await session.get(Job, job_id, populate_existing=True)

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.get("/{job_id}/events", response_model=list[JobEventResponse])
async def list_job_events(
    job_id: UUID,
    session: DbSession,
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=200, ge=1, le=1000),
):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    stmt = (
        select(JobEventLog)
        .where(JobEventLog.job_id == job_id, JobEventLog.id > after_id)
        .order_by(JobEventLog.id.asc())
        .limit(limit)
    )
    return (await session.execute(stmt)).scalars().all()

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel(job_id: UUID, session: DbSession, body: Optional[CancelRequest] = None):
    try:
        job = await cancel_job(session, job_id, reason=body.reason if body else None)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    await session.commit()
    return job
