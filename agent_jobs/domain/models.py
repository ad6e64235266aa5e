from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class JobRecord:
    """Snapshot of a claimed job handed to a handler. Detached from any session."""
    id: UUID
    project_id: UUID
    job_type: str
    agent_key: str
    payload: dict[str, Any] = field(default_factory=dict)

    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3

    @classmethod
    def from_row(cls, row) -> "JobRecord":
        return cls(
            id=row.id,
            project_id=row.project_id,
            job_type=row.job_type,
            agent_key=row.agent_key,
            payload=dict(row.payload or {}),
            priority=row.priority,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
        )

    @property
    def retriable(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass
class PendingEvent:
    project_id: UUID
    job_id: UUID
    type: str
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
