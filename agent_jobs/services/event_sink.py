import asyncio
import json
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_jobs.commands.append_event import append_job_events
from agent_jobs.db.session import AsyncSessionLocal
from agent_jobs.domain.models import PendingEvent
from agent_jobs.settings import settings

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Store unreachable or busy; the same rows may succeed on a later flush."""
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, OSError, asyncio.TimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class EventSink:
    """
    Buffered writer for the job event log.

    Producers `emit()` into a bounded queue; one flush task writes batches
    in queue order, so events of a single job keep their order. A full
    queue makes `emit()` wait rather than drop.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        max_queue: Optional[int] = None,
        batch_size: Optional[int] = None,
        interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.EVENT_SINK_BATCH_SIZE
        self.interval = interval if interval is not None else settings.EVENT_SINK_FLUSH_MS / 1000
        self._queue: asyncio.Queue[PendingEvent] = asyncio.Queue(maxsize=max_queue or settings.EVENT_SINK_MAX_QUEUE)
        # Batch taken off the queue but not yet written
        self._carry: list[PendingEvent] = []
        self._flush_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self.running = False
        self._task = None

    async def start(self):
        if self._task:
            return
        self.running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_loop())
        logger.info("EventSink started.")

    async def stop(self):
        """Stops the flush task, then writes whatever is still buffered."""
        self.running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        await self.drain()
        logger.info("EventSink stopped.")

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._carry)

    async def emit(
        self,
        project_id: UUID,
        job_id: UUID,
        type: str,
        message: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Queues one event. Raises ValueError if `data` cannot be stored as
        JSON, so a handler sees the error instead of the flush task.
        """
        if data:
            try:
                json.dumps(data)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Event data is not JSON-serializable: {e}") from e
        await self._queue.put(PendingEvent(
            project_id=project_id,
            job_id=job_id,
            type=str(type),
            message=message,
            data=data or {},
        ))

    async def run_loop(self):
        while self.running:
            try:
                written = await self.flush()
                if written:
                    continue
            except Exception as e:
                logger.error(f"Error in EventSink: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def flush(self) -> int:
        """Writes one batch in a single transaction. Returns rows written."""
        async with self._flush_lock:
            batch = self._carry
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            self._carry = batch

            if not batch:
                return 0

            try:
                written = await self._write(batch)
            except Exception as e:
                # Kept in _carry so a transient failure is retried as is
                if _is_transient(e):
                    raise
                logger.warning("EventSink batch of %d rejected, writing rows one by one: %s", len(batch), e)
                written = await self._write_each()

            self._carry = []
            return written

    async def _write(self, events: list[PendingEvent]) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                return await append_job_events(session, events)

    async def _write_each(self) -> int:
        """Writes _carry one row per transaction, dropping rows the store rejects."""
        written = 0
        while self._carry:
            pending = self._carry[0]
            try:
                written += await self._write([pending])
            except Exception as e:
                if _is_transient(e):
                    raise
                logger.error(
                    "Dropping %s event for job %s rejected by the store: %s", pending.type, pending.job_id, e
                )
            self._carry.pop(0)
        return written

    async def drain(self) -> int:
        total = 0
        while self.pending:
            try:
                written = await self.flush()
            except Exception as e:
                logger.error("EventSink drain failed with %d events pending: %s", self.pending, e)
                break
            total += written
        return total
