from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agent_jobs.db.session import Base
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import JobStatus, Priority, WorkerStatus

JsonDocument = JSON().with_variant(JSONB(), "postgresql")

# Rows in these states do not hold their idempotency key
_KEY_HOLDING = "status NOT IN ('failed', 'canceled') AND idempotency_key IS NOT NULL"

class Job(Base):
    __tablename__ = "agent_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    job_type: Mapped[str] = mapped_column(String, nullable=False)
    agent_key: Mapped[str] = mapped_column(String, nullable=False)

    # Core orchestration fields
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.QUEUED)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=int(Priority.DEFAULT))
    payload: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Scheduling fields
    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lock: set iff status = running
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        # "claim" query: status=queued + run_after <= now, best priority then oldest
        Index("ix_agent_jobs_ready", "status", "run_after", "priority", "created_at"),
        Index("ix_agent_jobs_project", "project_id", "created_at"),
        # Reclaim query: running rows by lock age
        Index("ix_agent_jobs_locked", "status", "locked_at"),
        # Uniqueness for idempotency, released once a job fails or is canceled
        Index(
            "ix_agent_jobs_idempotency",
            "project_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text(_KEY_HOLDING),
            sqlite_where=text(_KEY_HOLDING),
        ),
    )

class JobEventLog(Base):
    __tablename__ = "agent_job_events"

    # Autoincrement id gives insertion order
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    project_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("agent_jobs.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

    __table_args__ = (
        Index("ix_agent_job_events_job", "job_id", "id"),
        Index("ix_agent_job_events_project", "project_id", "id"),
    )

class WorkerHeartbeat(Base):
    __tablename__ = "worker_heartbeats"

    worker_id: Mapped[str] = mapped_column(String, primary_key=True)
    service_name: Mapped[str] = mapped_column(String, nullable=False, default="agent-jobs-worker")
    status: Mapped[str] = mapped_column(String, nullable=False, default=WorkerStatus.RUNNING)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    jobs_processed: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)
    consecutive_poll_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rss_mb: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    vms_mb: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    details: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_worker_heartbeats_last_seen", "last_seen_at"),
    )
