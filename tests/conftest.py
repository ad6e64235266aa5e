"""
Pytest configuration and shared fixtures.

Tests run against a file-backed SQLite database (aiosqlite), one per test,
so concurrent sessions get their own connections like they would on Postgres.
"""

import uuid

import pytest
from sqlalchemy import event

from agent_jobs.db.session import init_models, make_engine, make_session_factory
from agent_jobs.handlers.registry import HandlerRegistry
from agent_jobs.scheduler.health import MemorySnapshot, ProcessHealthGuard
from agent_jobs.scheduler.loop import SchedulerLoop
from agent_jobs.services.event_sink import EventSink
from agent_jobs.settings import Settings


def _fast_settings(**overrides) -> Settings:
    values = dict(
        WORKER_ID="test-worker",
        WORKER_CONCURRENCY=3,
        WORKER_HEAVY_CONCURRENCY=1,
        WORKER_POLL_MS=250,
        WORKER_CLAIM_BATCH=5,
        WORKER_JOB_TIMEOUT_MS=2_000,
        WORKER_RETRY_BASE_DELAY_MS=0,
        WORKER_RECLAIM_RETRY_DELAY_MS=0,
        WORKER_HEAVY_WAIT_MS=10,
        WORKER_MAX_RSS_MB=0,
        WORKER_MAX_JOBS_PER_PROCESS=0,
        EVENT_SINK_FLUSH_MS=10,
        DEFAULT_MAX_ATTEMPTS=3,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings():
    return _fast_settings


@pytest.fixture
def settings():
    return _fast_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")

    # pysqlite's implicit transactions break SAVEPOINT; take the write lock up front instead
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def project_id():
    return uuid.uuid4()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def memory():
    """Mutable RSS reading fed to the health guard."""
    return {"rss_mb": 100.0}


@pytest.fixture
async def make_loop(settings, session_factory, registry, memory):
    loops = []

    async def _make(settings=settings, registry=registry):
        sink = EventSink(session_factory, max_queue=100, batch_size=50, interval=0.01)
        health = ProcessHealthGuard(settings, sampler=lambda: MemorySnapshot(rss_mb=memory["rss_mb"], vms_mb=0.0))
        loop = SchedulerLoop(
            settings=settings,
            session_factory=session_factory,
            registry=registry,
            events=sink,
            health=health,
        )
        await sink.start()
        loops.append(loop)
        return loop

    yield _make

    # Runs on the test's event loop, before the engine fixture disposes
    for loop in loops:
        for task in list(loop.ctx.abandoned):
            task.cancel()
        await loop.events.stop()


@pytest.fixture
async def loop(make_loop):
    return await make_loop()
