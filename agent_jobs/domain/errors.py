class JobError(Exception):
    """Base exception for job queue errors."""
    pass

class EnqueueError(JobError):
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class UnknownJobTypeError(JobError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job_type {job_type}")

class JobTimeoutError(JobError):
    def __init__(self, job_id, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job {job_id} timed out after {timeout_seconds:g}s")

class FatalWorkerError(Exception):
    """
    Process-level condition: the worker must exit and be restarted by its supervisor.

    Not a JobError: per-job error handling re-raises it untouched.
    """
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
