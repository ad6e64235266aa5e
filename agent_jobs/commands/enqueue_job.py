import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_jobs.db.models import Job
from agent_jobs.domain.errors import EnqueueError
from agent_jobs.domain.retry import utcnow, with_retry
from agent_jobs.domain.states import JobStatus, Priority, REENQUEUEABLE_STATUSES
from agent_jobs.settings import settings
from agent_jobs.api.v1.metrics import JOBS_ENQUEUED_TOTAL

logger = logging.getLogger(__name__)

def idempotency_key_for(*parts: Any) -> str:
    """Stable sha1 over JSON-encoded parts (dict keys sorted)."""
    encoded = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()

async def _existing_job_id(session: AsyncSession, project_id: UUID, idempotency_key: str) -> Optional[UUID]:
    stmt = select(Job.id).where(
        Job.project_id == project_id,
        Job.idempotency_key == idempotency_key,
        Job.status.not_in(REENQUEUEABLE_STATUSES),
    )
    return await session.scalar(stmt)

async def enqueue_job(
    session: AsyncSession,
    project_id: UUID,
    job_type: str,
    agent_key: str,
    payload: dict[str, Any],
    idempotency_key: Optional[str] = None,
    priority: int = Priority.DEFAULT,
    run_after: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> UUID:
    """
    Inserts a queued job and returns its id.

    With an idempotency key, a live job (anything but failed/canceled)
    already carrying the key for this project is returned instead of a new
    row. The partial unique index backs this up when two producers race.

    job_type is not checked against the handler registry; workers and
    producers deploy independently.
    """
    if idempotency_key:
        existing = await _existing_job_id(session, project_id, idempotency_key)
        if existing:
            logger.debug("Enqueue deduplicated key=%s -> job %s", idempotency_key, existing)
            return existing

    now = utcnow()
    job = Job(
        project_id=project_id,
        job_type=job_type,
        agent_key=agent_key,
        payload=payload or {},
        idempotency_key=idempotency_key,
        priority=int(priority),
        run_after=run_after or now,
        created_at=now,
        max_attempts=max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
        status=JobStatus.QUEUED,
    )

    try:
        async with session.begin_nested():
            session.add(job)
    except IntegrityError as e:
        # Duplicate key inserted concurrently
        if idempotency_key:
            existing = await _existing_job_id(session, project_id, idempotency_key)
            if existing:
                return existing
        raise EnqueueError(f"Failed to enqueue {job_type}: {e.orig}") from e

    JOBS_ENQUEUED_TOTAL.labels(job_type=job_type).inc()
    return job.id

async def enqueue(
    session_factory: async_sessionmaker[AsyncSession],
    project_id: UUID,
    job_type: str,
    agent_key: str,
    payload: dict[str, Any],
    idempotency_key: Optional[str] = None,
    priority: int = Priority.DEFAULT,
    run_after: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> UUID:
    """Producer entry point: own session, commit, retry on transient store errors."""
    async def _attempt() -> UUID:
        async with session_factory() as session:
            job_id = await enqueue_job(
                session,
                project_id=project_id,
                job_type=job_type,
                agent_key=agent_key,
                payload=payload,
                idempotency_key=idempotency_key,
                priority=priority,
                run_after=run_after,
                max_attempts=max_attempts,
            )
            await session.commit()
            return job_id

    return await with_retry(_attempt, retries=2, base_delay=0.25, factor=2, retry_on=(OperationalError,))
