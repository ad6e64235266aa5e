import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_jobs.domain.models import JobRecord
from agent_jobs.services.event_sink import EventSink

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Store handle given to a handler alongside its job."""
    session_factory: async_sessionmaker[AsyncSession]
    events: EventSink
    job: JobRecord
    worker_id: str

    async def emit(self, type: str, message: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        await self.events.emit(self.job.project_id, self.job.id, type, message=message, data=data)


Handler = Callable[[HandlerContext, JobRecord], Coroutine[Any, Any, None]]


class HandlerRegistry:
    """Static job_type -> handler map. A miss is a deployment bug, not a retry."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def add(self, job_type: str, handler: Handler) -> None:
        if job_type in self._handlers and self._handlers[job_type] is not handler:
            raise ValueError(f"Handler for {job_type} already registered")
        self._handlers[job_type] = handler

    def register(self, job_type: str) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.add(job_type, fn)
            return fn
        return decorator

    def resolve(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


registry = HandlerRegistry()


def load_handler_modules(names: Iterable[str]) -> list[str]:
    """Imports handler modules so their @registry.register decorators run."""
    loaded = []
    for name in names:
        importlib.import_module(name)
        loaded.append(name)
        logger.info("Loaded handler module %s", name)
    return loaded
