from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED_TOTAL = Counter('jobs_enqueued_total', 'Jobs inserted by producers', ['job_type'])
JOBS_CLAIMED_TOTAL = Counter('jobs_claimed_total', 'Jobs claimed by this process')
JOB_CLAIM_DELAY = Histogram('job_start_delay_seconds', 'Time from run_after to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

JOB_OUTCOMES = Counter('job_outcomes_total', 'Job attempt outcomes', ['outcome'])  # completed|failed|requeued|canceled
JOB_DURATION = Histogram('job_duration_seconds', 'Handler wall time', buckets=[1.0, 5.0, 10.0, 60.0, 120.0, 300.0, 600.0])

JOBS_RECLAIMED_TOTAL = Counter(
    "jobs_reclaimed_total",
    "Abandoned running jobs recovered by the reaper",
    ["path"]  # primary vs fallback
)

JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Jobs currently executing in this process"
)

HEAVY_JOBS_INFLIGHT = Gauge(
    "heavy_jobs_inflight",
    "Heavy-class jobs currently executing in this process"
)

WORKER_RSS_MB = Gauge(
    "worker_rss_megabytes",
    "Resident set size of this worker process"
)

WORKER_POLL_ERRORS = Counter(
    "worker_poll_errors_total",
    "Failed claim-batch calls"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
