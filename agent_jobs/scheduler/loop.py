import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_jobs.commands.claim_jobs import claim_jobs
from agent_jobs.commands.finalize_job import complete_job, fail_job, finalize_job, release_jobs
from agent_jobs.commands.reclaim_stale import reclaim_stale_jobs, reclaim_stale_jobs_fallback
from agent_jobs.db.session import AsyncSessionLocal
from agent_jobs.domain.errors import FatalWorkerError, JobTimeoutError, UnknownJobTypeError
from agent_jobs.domain.models import JobRecord
from agent_jobs.domain.states import JobEventType, JobStatus, WorkerStatus
from agent_jobs.handlers.registry import Handler, HandlerContext, HandlerRegistry, registry as default_registry
from agent_jobs.scheduler.context import ClaimedBatch, WorkerContext
from agent_jobs.scheduler.health import ProcessHealthGuard
from agent_jobs.services.event_sink import EventSink
from agent_jobs.settings import Settings, settings as default_settings
from agent_jobs.api.v1.metrics import JOB_DURATION, JOBS_INFLIGHT, WORKER_POLL_ERRORS

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """
    The worker process loop: reclaim, claim a batch, run it on a bounded
    executor pool, write outcomes back, sleep, repeat.

    Handler errors stay per-job. FatalWorkerError is the only error that
    leaves run(); the entry point turns it into a process exit.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        registry: HandlerRegistry = default_registry,
        events: Optional[EventSink] = None,
        health: Optional[ProcessHealthGuard] = None,
        context: Optional[WorkerContext] = None,
    ):
        self.settings = settings
        self.worker_id = settings.WORKER_ID
        self.session_factory = session_factory
        self.registry = registry
        self.events = events or EventSink(
            session_factory,
            max_queue=settings.EVENT_SINK_MAX_QUEUE,
            batch_size=settings.EVENT_SINK_BATCH_SIZE,
            interval=settings.EVENT_SINK_FLUSH_MS / 1000,
        )
        self.health = health or ProcessHealthGuard(settings)
        self.ctx = context or WorkerContext(heavy_limit=settings.WORKER_HEAVY_CONCURRENCY)
        self._last_reclaim: Optional[float] = None

    def stop(self):
        self.ctx.request_shutdown()

    async def run(self):
        s = self.settings
        logger.info(
            "Worker %s starting concurrency=%d heavy=%d poll=%dms batch=%d timeout=%dms maxJobs=%d maxRss=%dMB",
            self.worker_id,
            s.WORKER_CONCURRENCY,
            s.WORKER_HEAVY_CONCURRENCY,
            s.WORKER_POLL_MS,
            s.WORKER_CLAIM_BATCH,
            s.WORKER_JOB_TIMEOUT_MS,
            s.WORKER_MAX_JOBS_PER_PROCESS,
            s.WORKER_MAX_RSS_MB,
        )
        await self.events.start()
        final_status = WorkerStatus.STOPPED

        try:
            while not self.ctx.shutting_down:
                await self.iterate()
                if self.ctx.shutting_down:
                    break
                await self.ctx.wait_for_shutdown(s.poll_interval_seconds)
        except FatalWorkerError as e:
            final_status = WorkerStatus.ERROR
            logger.critical("Fatal worker condition: %s", e.reason)
            raise
        finally:
            await self.events.stop()
            await self.health.beat(self.session_factory, self.worker_id, final_status)
            logger.info("Worker %s shutdown complete (%s)", self.worker_id, final_status)

    async def iterate(self) -> int:
        """One loop iteration. Returns the number of jobs run."""
        self.health.check_memory()
        status = WorkerStatus.DRAINING if self.ctx.shutting_down else WorkerStatus.RUNNING
        await self.health.beat(self.session_factory, self.worker_id, status)

        await self.maybe_reclaim()
        if self.ctx.shutting_down:
            return 0

        try:
            ran = await self.run_once()
        except FatalWorkerError:
            raise
        except Exception as e:
            WORKER_POLL_ERRORS.inc()
            logger.error("Poll error (%d consecutive): %s", self.health.consecutive_poll_errors + 1, e)
            self.health.record_poll_error()
            return 0

        self.health.record_poll_success()
        if ran:
            logger.info("Processed %d jobs", ran)
            self.health.record_processed(ran)
        return ran

    async def maybe_reclaim(self, force: bool = False) -> int:
        """
        Runs reclaim-stale when the interval has elapsed. Falls back to the
        two-step variant when the atomic path errors or finds nothing.
        """
        now = time.monotonic()
        interval = self.settings.WORKER_RECLAIM_INTERVAL_MS / 1000
        if not force and self._last_reclaim is not None and now - self._last_reclaim < interval:
            return 0
        self._last_reclaim = now

        s = self.settings
        retry_delay = timedelta(milliseconds=s.WORKER_RECLAIM_RETRY_DELAY_MS)
        reclaimed = 0
        via_fallback = 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    reclaimed = await reclaim_stale_jobs(session, s.stale_after, retry_delay)
        except Exception as e:
            logger.warning("Atomic reclaim failed, using fallback reaper: %s", e)

        if reclaimed == 0:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        via_fallback = await reclaim_stale_jobs_fallback(
                            session,
                            s.stale_after,
                            retry_delay,
                            heartbeat_stale_after=timedelta(seconds=s.WORKER_HEARTBEAT_STALE_SECONDS),
                            limit=max(100, s.WORKER_CLAIM_BATCH * 10),
                        )
            except Exception as e:
                logger.error("Reclaim error: %s", e, exc_info=True)

        total = reclaimed + via_fallback
        if total:
            logger.info("Reclaimed %d stale jobs%s", total, " (fallback reaper)" if via_fallback else "")
        return total

    async def claim(self) -> list[JobRecord]:
        async with self.session_factory() as session:
            async with session.begin():
                return await claim_jobs(session, self.worker_id, self.settings.WORKER_CLAIM_BATCH)

    async def run_once(self) -> int:
        """Claims one batch and drains it through the executor pool. Returns jobs started."""
        jobs = await self.claim()
        if not jobs:
            return 0

        batch = ClaimedBatch(
            jobs,
            heavy_job_types=self.settings.WORKER_HEAVY_JOB_TYPES,
            realtime_job_types=self.settings.WORKER_REALTIME_JOB_TYPES,
        )
        pool_size = min(self.settings.WORKER_CONCURRENCY, len(jobs))
        executors = [
            asyncio.create_task(self._executor(batch), name=f"executor-{i}")
            for i in range(pool_size)
        ]

        try:
            results = await asyncio.gather(*executors, return_exceptions=True)
        finally:
            leftover = batch.take_remaining()
            if leftover:
                await self._release(leftover)

        for result in results:
            if isinstance(result, FatalWorkerError):
                raise result
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return len(jobs) - len(leftover)

    async def _executor(self, batch: ClaimedBatch):
        wait = self.settings.WORKER_HEAVY_WAIT_MS / 1000
        while not self.ctx.stopping:
            taken = await batch.take(self.ctx, wait)
            if taken is None:
                break
            job, heavy = taken
            try:
                await self.execute(job)
            except FatalWorkerError as e:
                # Siblings finish their current job, then the batch stops
                self.ctx.mark_fatal(e)
                raise
            finally:
                if heavy:
                    await self.ctx.release_heavy()

    async def execute(self, job: JobRecord) -> Optional[JobStatus]:
        """Runs one claimed job to an outcome. Returns the status written, if any."""
        await self.events.emit(job.project_id, job.id, JobEventType.STATUS, "running")

        handler = self.registry.resolve(job.job_type)
        if handler is None:
            error = UnknownJobTypeError(job.job_type)
            logger.error("Job %s: %s", job.id, error)
            await self.events.emit(job.project_id, job.id, JobEventType.STATUS, f"failed: unknown job_type {job.job_type}")
            done = await self._store(finalize_job, job.id, self.worker_id, JobStatus.FAILED, error=str(error), refund_attempt=True)
            return JobStatus.FAILED if done else None

        JOBS_INFLIGHT.inc()
        started = time.monotonic()
        try:
            await self._run_handler(job, handler)
        except FatalWorkerError:
            raise
        except Exception as e:
            msg = str(e) or type(e).__name__
            logger.error("Job %s (%s) failed on attempt %d/%d: %s", job.id, job.job_type, job.attempts, job.max_attempts, msg)
            await self.events.emit(job.project_id, job.id, JobEventType.STATUS, "failed", data={"error": msg})
            outcome = await self._store(
                fail_job, job, self.worker_id, msg, self.settings.WORKER_RETRY_BASE_DELAY_MS
            )
            if isinstance(e, JobTimeoutError):
                raise FatalWorkerError(f"timed out job {job.id}; forcing recycle to clear lingering resources") from e
            return outcome
        finally:
            JOBS_INFLIGHT.dec()
            JOB_DURATION.observe(time.monotonic() - started)

        await self.events.emit(job.project_id, job.id, JobEventType.STATUS, "completed")
        done = await self._store(complete_job, job.id, self.worker_id)
        return JobStatus.COMPLETED if done else None

    async def _run_handler(self, job: JobRecord, handler: Handler) -> None:
        """
        Races the handler against the job timeout. On timeout the handler
        task is left running, not cancelled; only process exit stops it.
        """
        hctx = HandlerContext(
            session_factory=self.session_factory,
            events=self.events,
            job=job,
            worker_id=self.worker_id,
        )
        task = asyncio.create_task(handler(hctx, job), name=f"job-{job.id}")
        timeout = self.settings.job_timeout_seconds
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            task.result()
            return
        self.ctx.abandon(task)
        raise JobTimeoutError(job.id, timeout)

    async def _store(self, command, *args, **kwargs):
        """Runs a store command in its own transaction. A failed write leaves the row for the reaper."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await command(session, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error("Store write %s failed: %s", command.__name__, e)
            return None

    async def _release(self, jobs: list[JobRecord]) -> None:
        released = await self._store(release_jobs, [j.id for j in jobs], self.worker_id)
        if released:
            logger.info("Released %d unstarted jobs back to the queue", released)
