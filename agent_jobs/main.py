from fastapi import FastAPI

from agent_jobs.settings import settings
from agent_jobs.api.v1.jobs import router as jobs_router
from agent_jobs.api.v1.workers import router as workers_router
from agent_jobs.api.v1.admin import router as admin_router
from agent_jobs.api.v1.metrics import router as metrics_router

app = FastAPI(title=settings.PROJECT_NAME)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
