from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from agent_jobs.client import JobsClient
from agent_jobs.commands.heartbeat import record_heartbeat
from agent_jobs.db.models import Job
from agent_jobs.db.session import get_db_session
from agent_jobs.domain.retry import utcnow
from agent_jobs.domain.states import AgentKey, JobStatus, WorkerStatus
from agent_jobs.main import app


@pytest.fixture
async def api(session_factory):
    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _body(project_id, **extra):
    body = {
        "project_id": str(project_id),
        "job_type": "test.noop",
        "agent_key": AgentKey.SYSTEM,
        "payload": {"x": 1},
    }
    body.update(extra)
    return body


async def test_create_and_fetch_job(api, project_id):
    resp = await api.post("/api/v1/jobs", json=_body(project_id, priority=80))
    assert resp.status_code == 201
    job = resp.json()
    assert job["status"] == "queued"
    assert job["priority"] == 80
    assert job["attempts"] == 0

    resp = await api.get(f"/api/v1/jobs/{job['id']}")
    assert resp.status_code == 200
    assert resp.json()["payload"] == {"x": 1}


async def test_create_is_idempotent(api, project_id):
    first = await api.post("/api/v1/jobs", json=_body(project_id, idempotency_key="once"))
    second = await api.post("/api/v1/jobs", json=_body(project_id, idempotency_key="once"))

    assert first.json()["id"] == second.json()["id"]


async def test_missing_job_is_404(api):
    assert (await api.get(f"/api/v1/jobs/{uuid4()}")).status_code == 404
    assert (await api.get(f"/api/v1/jobs/{uuid4()}/events")).status_code == 404
    assert (await api.post(f"/api/v1/jobs/{uuid4()}/cancel", json={})).status_code == 404


async def test_cancel_then_read_events(api, project_id):
    job_id = (await api.post("/api/v1/jobs", json=_body(project_id))).json()["id"]

    resp = await api.post(f"/api/v1/jobs/{job_id}/cancel", json={"reason": "not needed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "canceled"

    # Canceling again is a no-op
    assert (await api.post(f"/api/v1/jobs/{job_id}/cancel", json={})).json()["status"] == "canceled"

    events = (await api.get(f"/api/v1/jobs/{job_id}/events")).json()
    assert [(e["type"], e["message"]) for e in events] == [("status", "canceled")]
    assert events[0]["data"] == {"reason": "not needed"}

    later = (await api.get(f"/api/v1/jobs/{job_id}/events", params={"after_id": events[0]["id"]})).json()
    assert later == []


async def test_admin_reclaim(api, session_factory, project_id):
    now = utcnow()
    async with session_factory() as session:
        session.add(Job(
            project_id=project_id,
            job_type="test.noop",
            agent_key=AgentKey.SYSTEM,
            payload={},
            status=JobStatus.RUNNING,
            attempts=1,
            locked_by="gone",
            locked_at=now - timedelta(days=1),
        ))
        await session.commit()

    resp = await api.post("/api/v1/admin/reclaim_stale")

    assert resp.status_code == 200
    assert resp.json() == {"reclaimed_count": 1}


async def test_workers_health(api, session_factory):
    now = utcnow()
    async with session_factory() as session:
        await record_heartbeat(session, "fresh", WorkerStatus.RUNNING, 3, 0, rss_mb=200.0, now=now)
        await record_heartbeat(session, "old", WorkerStatus.RUNNING, 9, 0, now=now - timedelta(hours=1))
        await session.commit()

    body = (await api.get("/api/v1/workers/health")).json()

    assert body["healthy"] is True
    workers = {w["worker_id"]: w for w in body["workers"]}
    assert workers["fresh"]["stale"] is False
    assert workers["fresh"]["jobs_processed"] == 3
    assert workers["old"]["stale"] is True
    assert body["failed_last_hour"] == 0


async def test_metrics_and_health_endpoints(api):
    assert (await api.get("/health")).json() == {"status": "ok"}
    metrics = await api.get("/metrics")
    assert metrics.status_code == 200
    assert "jobs_claimed_total" in metrics.text


async def test_jobs_client_round_trip(api, project_id):
    client = JobsClient("http://test", transport=httpx.ASGITransport(app=app))
    try:
        job = await client.enqueue(project_id, "test.noop", AgentKey.SYSTEM, {"a": 1}, idempotency_key="client")
        assert job is not None
        again = await client.enqueue(project_id, "test.noop", AgentKey.SYSTEM, {"a": 1}, idempotency_key="client")
        assert again["id"] == job["id"]

        assert (await client.get(job["id"]))["status"] == "queued"
        assert await client.get(uuid4()) is None

        assert await client.cancel(job["id"], reason="done") is True
        assert [e["message"] for e in await client.events(job["id"])] == ["canceled"]
    finally:
        await client.close()


async def test_jobs_client_reports_failures_as_none(project_id):
    def refuse(request):
        return httpx.Response(503)

    client = JobsClient("http://test", transport=httpx.MockTransport(refuse))
    try:
        assert await client.enqueue(project_id, "test.noop", AgentKey.SYSTEM) is None
        assert await client.events(uuid4()) == []
        assert await client.cancel(uuid4()) is False
    finally:
        await client.close()
