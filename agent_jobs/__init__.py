"""Background job queue and worker orchestration."""
