from agent_jobs import worker
from agent_jobs.domain.errors import FatalWorkerError


def test_main_exits_zero_after_graceful_shutdown(monkeypatch):
    calls = []

    async def fake_run_worker(create_tables=False, once=False):
        calls.append((create_tables, once))

    monkeypatch.setattr(worker, "run_worker", fake_run_worker)

    assert worker.main(["--create-tables", "--once"]) == worker.EXIT_OK
    assert calls == [(True, True)]


def test_main_exits_nonzero_on_fatal_condition(monkeypatch):
    async def fake_run_worker(create_tables=False, once=False):
        raise FatalWorkerError("rss 2000.0MB exceeded limit 1536MB")

    monkeypatch.setattr(worker, "run_worker", fake_run_worker)

    assert worker.main([]) == worker.EXIT_FATAL
