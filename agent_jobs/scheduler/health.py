import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import psutil
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_jobs.commands.heartbeat import record_heartbeat
from agent_jobs.domain.errors import FatalWorkerError
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import WorkerStatus
from agent_jobs.settings import Settings
from agent_jobs.api.v1.metrics import WORKER_RSS_MB

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class MemorySnapshot:
    rss_mb: float
    vms_mb: float


def sample_process_memory(process: Optional[psutil.Process] = None) -> MemorySnapshot:
    info = (process or psutil.Process(os.getpid())).memory_info()
    return MemorySnapshot(rss_mb=info.rss / _MB, vms_mb=info.vms / _MB)


class ProcessHealthGuard:
    """
    Self-recycling valves for a long-lived worker, checked once per loop
    iteration:

    - resident memory at or above WORKER_MAX_RSS_MB
    - WORKER_MAX_JOBS_PER_PROCESS jobs drained by this process
    - WORKER_MAX_CONSECUTIVE_POLL_ERRORS failed claim calls in a row

    Each raises FatalWorkerError; the supervisor restarts the process.
    A ceiling of 0 disables the first two.
    """

    def __init__(self, settings: Settings, sampler: Optional[Callable[[], MemorySnapshot]] = None):
        self.settings = settings
        if sampler is None:
            process = psutil.Process(os.getpid())
            sampler = lambda: sample_process_memory(process)  # noqa: E731
        self._sampler = sampler
        self.started_at: datetime = utcnow()
        self.jobs_processed = 0
        self.consecutive_poll_errors = 0
        self.last_snapshot: Optional[MemorySnapshot] = None
        self._last_memory_log: Optional[float] = None

    def check_memory(self) -> MemorySnapshot:
        snapshot = self._sampler()
        self.last_snapshot = snapshot
        WORKER_RSS_MB.set(snapshot.rss_mb)

        now = time.monotonic()
        interval = self.settings.WORKER_MEMORY_LOG_INTERVAL_MS / 1000
        if self._last_memory_log is None or now - self._last_memory_log >= interval:
            logger.info("Worker health rss=%.1fMB vms=%.1fMB jobs=%d", snapshot.rss_mb, snapshot.vms_mb, self.jobs_processed)
            self._last_memory_log = now

        limit = self.settings.WORKER_MAX_RSS_MB
        if limit > 0 and snapshot.rss_mb >= limit:
            raise FatalWorkerError(f"rss {snapshot.rss_mb:.1f}MB exceeded limit {limit}MB")
        return snapshot

    def record_processed(self, count: int) -> None:
        self.jobs_processed += count
        limit = self.settings.WORKER_MAX_JOBS_PER_PROCESS
        if limit > 0 and self.jobs_processed >= limit:
            raise FatalWorkerError(f"recycling process after {self.jobs_processed} jobs")

    def record_poll_success(self) -> None:
        self.consecutive_poll_errors = 0

    def record_poll_error(self) -> None:
        self.consecutive_poll_errors += 1
        limit = self.settings.WORKER_MAX_CONSECUTIVE_POLL_ERRORS
        if self.consecutive_poll_errors >= limit:
            raise FatalWorkerError(f"exiting after {self.consecutive_poll_errors} consecutive poll errors")

    async def beat(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: str,
        status: WorkerStatus,
        details: Optional[dict] = None,
    ) -> bool:
        """Publishes a heartbeat row. Failures are logged, never fatal."""
        snapshot = self.last_snapshot
        try:
            async with session_factory() as session:
                async with session.begin():
                    await record_heartbeat(
                        session,
                        worker_id=worker_id,
                        status=status,
                        jobs_processed=self.jobs_processed,
                        consecutive_poll_errors=self.consecutive_poll_errors,
                        rss_mb=round(snapshot.rss_mb, 2) if snapshot else None,
                        vms_mb=round(snapshot.vms_mb, 2) if snapshot else None,
                        started_at=self.started_at,
                        details=details,
                    )
            return True
        except Exception as e:
            logger.warning("Heartbeat write failed for %s: %s", worker_id, e)
            return False
