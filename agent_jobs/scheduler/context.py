import asyncio
import logging
from typing import Optional

from agent_jobs.domain.errors import FatalWorkerError
from agent_jobs.domain.models import JobRecord
from agent_jobs.domain.states import Priority
from agent_jobs.api.v1.metrics import HEAVY_JOBS_INFLIGHT

logger = logging.getLogger(__name__)


class WorkerContext:
    """
    Mutable per-process worker state shared by the loop and its executors:
    the heavy-class slot counter, the shutdown flag, and handler tasks
    abandoned after a timeout.
    """

    def __init__(self, heavy_limit: int):
        self.heavy_limit = heavy_limit
        self.heavy_in_flight = 0
        self._heavy_lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self.fatal: Optional[FatalWorkerError] = None
        # Strong refs so abandoned handler tasks are not garbage collected mid-flight
        self.abandoned: set[asyncio.Task] = set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    @property
    def stopping(self) -> bool:
        """No new job may be started: graceful shutdown or a pending fatal exit."""
        return self._shutdown.is_set() or self.fatal is not None

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested, draining in-flight jobs")
        self._shutdown.set()

    def mark_fatal(self, error: FatalWorkerError) -> None:
        if self.fatal is None:
            self.fatal = error

    async def wait_for_shutdown(self, timeout: float) -> bool:
        """Sleeps up to `timeout` seconds; returns early (True) on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def try_acquire_heavy(self) -> bool:
        async with self._heavy_lock:
            if self.heavy_in_flight >= self.heavy_limit:
                return False
            self.heavy_in_flight += 1
            HEAVY_JOBS_INFLIGHT.set(self.heavy_in_flight)
            return True

    async def release_heavy(self) -> None:
        async with self._heavy_lock:
            self.heavy_in_flight = max(0, self.heavy_in_flight - 1)
            HEAVY_JOBS_INFLIGHT.set(self.heavy_in_flight)

    def abandon(self, task: asyncio.Task) -> None:
        self.abandoned.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        self.abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Abandoned handler %s finished late with error: %s", task.get_name(), exc)
        else:
            logger.info("Abandoned handler %s finished late", task.get_name())


class ClaimedBatch:
    """
    Jobs from one claim-batch call awaiting an executor.

    Realtime jobs go first; claim order is kept otherwise. A heavy job is
    only handed out when a heavy slot is free, and is skipped over (not
    waited on) while lighter jobs remain.
    """

    def __init__(
        self,
        jobs: list[JobRecord],
        heavy_job_types: set[str],
        realtime_job_types: set[str],
    ):
        self.heavy_job_types = heavy_job_types
        self.realtime_job_types = realtime_job_types
        # sorted() is stable, so claim order survives within each class
        self.pending: list[JobRecord] = sorted(jobs, key=lambda j: 0 if self.is_realtime(j) else 1)
        self._lock = asyncio.Lock()

    def is_heavy(self, job: JobRecord) -> bool:
        return job.job_type in self.heavy_job_types

    def is_realtime(self, job: JobRecord) -> bool:
        return job.priority >= Priority.REALTIME or job.job_type in self.realtime_job_types

    def __len__(self) -> int:
        return len(self.pending)

    def take_remaining(self) -> list[JobRecord]:
        """Empties the batch, returning jobs no executor started."""
        remaining, self.pending = self.pending, []
        return remaining

    async def take(self, ctx: WorkerContext, wait_seconds: float) -> Optional[tuple[JobRecord, bool]]:
        """
        Next runnable job and whether it holds a heavy slot, or None when the
        batch is empty or the worker is stopping.
        """
        while not ctx.stopping:
            async with self._lock:
                if not self.pending:
                    return None
                for index, job in enumerate(self.pending):
                    heavy = self.is_heavy(job)
                    if heavy and not await ctx.try_acquire_heavy():
                        continue
                    del self.pending[index]
                    return job, heavy
            # Only saturated heavy jobs left
            await asyncio.sleep(wait_seconds)
        return None
