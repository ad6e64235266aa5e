import pytest

from agent_jobs.db.models import WorkerHeartbeat
from agent_jobs.domain.errors import FatalWorkerError
from agent_jobs.domain.states import WorkerStatus
from agent_jobs.scheduler.health import MemorySnapshot, ProcessHealthGuard, sample_process_memory


def _guard(make_settings, rss_mb=100.0, **overrides):
    reading = {"rss_mb": rss_mb}
    guard = ProcessHealthGuard(
        make_settings(**overrides),
        sampler=lambda: MemorySnapshot(rss_mb=reading["rss_mb"], vms_mb=reading["rss_mb"] * 2),
    )
    return guard, reading


def test_memory_below_ceiling_passes(make_settings):
    guard, _ = _guard(make_settings, rss_mb=400.0, WORKER_MAX_RSS_MB=512)

    snapshot = guard.check_memory()

    assert snapshot.rss_mb == 400.0
    assert guard.last_snapshot == snapshot


def test_memory_at_ceiling_is_fatal(make_settings):
    guard, reading = _guard(make_settings, rss_mb=100.0, WORKER_MAX_RSS_MB=512)
    guard.check_memory()

    reading["rss_mb"] = 512.0
    with pytest.raises(FatalWorkerError, match="exceeded limit 512MB"):
        guard.check_memory()


def test_zero_memory_ceiling_disables_the_check(make_settings):
    guard, _ = _guard(make_settings, rss_mb=100_000.0, WORKER_MAX_RSS_MB=0)
    guard.check_memory()


def test_job_count_ceiling(make_settings):
    guard, _ = _guard(make_settings, WORKER_MAX_JOBS_PER_PROCESS=5)

    guard.record_processed(3)
    with pytest.raises(FatalWorkerError, match="after 6 jobs"):
        guard.record_processed(3)


def test_consecutive_poll_errors_reset_on_success(make_settings):
    guard, _ = _guard(make_settings, WORKER_MAX_CONSECUTIVE_POLL_ERRORS=3)

    guard.record_poll_error()
    guard.record_poll_error()
    guard.record_poll_success()
    guard.record_poll_error()
    guard.record_poll_error()
    assert guard.consecutive_poll_errors == 2

    with pytest.raises(FatalWorkerError):
        guard.record_poll_error()


async def test_beat_writes_heartbeat_row(make_settings, session_factory):
    guard, _ = _guard(make_settings, rss_mb=256.0)
    guard.check_memory()
    guard.record_processed(4)

    assert await guard.beat(session_factory, "w-1", WorkerStatus.RUNNING, details={"pool": 3})

    async with session_factory() as session:
        beat = await session.get(WorkerHeartbeat, "w-1")
    assert beat.status == WorkerStatus.RUNNING
    assert beat.jobs_processed == 4
    assert beat.rss_mb == 256.0
    assert beat.details == {"pool": 3}


async def test_beat_failure_is_not_fatal(make_settings):
    guard, _ = _guard(make_settings)

    def broken_factory():
        raise ConnectionError("store down")

    assert await guard.beat(broken_factory, "w-1", "running") is False


def test_sample_process_memory_reads_this_process():
    snapshot = sample_process_memory()
    assert snapshot.rss_mb > 0
    assert snapshot.vms_mb >= snapshot.rss_mb
