import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

class JobsClient:
    """HTTP client for producers that enqueue through the jobs API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def enqueue(
        self,
        project_id: UUID,
        job_type: str,
        agent_key: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        priority: Optional[int] = None,
        run_after: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Enqueues a job. Returns the job document, or None on failure.
        A duplicate idempotency key returns the existing job.
        """
        body: Dict[str, Any] = {
            "project_id": str(project_id),
            "job_type": job_type,
            "agent_key": agent_key,
            "payload": payload or {},
        }
        if idempotency_key:
            body["idempotency_key"] = idempotency_key
        if priority is not None:
            body["priority"] = int(priority)
        if run_after is not None:
            body["run_after"] = run_after.isoformat()
        if max_attempts is not None:
            body["max_attempts"] = max_attempts

        try:
            resp = await self.client.post("/api/v1/jobs", json=body)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Enqueue of %s rejected: status=%s", job_type, e.response.status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Enqueue of %s failed: %s", job_type, e)
            return None

    async def get(self, job_id: UUID) -> Optional[Dict[str, Any]]:
        try:
            resp = await self.client.get(f"/api/v1/jobs/{job_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Fetch failed for job=%s: %s", job_id, e)
            return None

    async def events(self, job_id: UUID, after_id: int = 0) -> List[Dict[str, Any]]:
        try:
            resp = await self.client.get(f"/api/v1/jobs/{job_id}/events", params={"after_id": after_id})
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Event fetch failed for job=%s: %s", job_id, e)
            return []

    async def cancel(self, job_id: UUID, reason: Optional[str] = None) -> bool:
        try:
            resp = await self.client.post(f"/api/v1/jobs/{job_id}/cancel", json={"reason": reason})
            resp.raise_for_status()
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Cancel failed for job=%s: %s", job_id, e)
            return False

    async def close(self):
        await self.client.aclose()
