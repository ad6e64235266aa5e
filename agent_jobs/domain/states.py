from enum import IntEnum, StrEnum, auto
from uuid import UUID

# Owner of tenant-agnostic system jobs (email, drip, recurring schedules)
SYSTEM_PROJECT_ID = UUID("00000000-0000-0000-0000-000000000000")


class JobStatus(StrEnum):
    QUEUED = auto()     # Waiting for a claim (possibly not before run_after)
    RUNNING = auto()    # Claimed and locked by a worker
    COMPLETED = auto()  # Handler succeeded
    FAILED = auto()     # Attempts exhausted or unrecoverable
    CANCELED = auto()   # Canceled by a user or operator


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})

# An idempotency key on a job in one of these states may be reused
REENQUEUEABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELED})


class JobEventType(StrEnum):
    STATUS = auto()
    LOG = auto()
    DELTA = auto()
    TOOL_CALL = auto()
    TOOL_RESULT = auto()
    ARTIFACT = auto()
    DONE = auto()


class WorkerStatus(StrEnum):
    RUNNING = auto()
    DRAINING = auto()
    STOPPED = auto()
    ERROR = auto()


class Priority(IntEnum):
    REALTIME = 120
    USER_BLOCKING = 100
    USER_INTERACTIVE = 80
    DEFAULT = 50
    BACKGROUND = 10


class JobType:
    PHASE0 = "phase0.generate_packet"
    PHASE_GEN = "phase.generate_packet"
    APPROVAL_EXEC = "approval.execute"
    EMAIL_DUE = "email.process_due"
    DRIP_DIGESTS = "drip.process_digests"
    DRIP_NUDGES = "drip.process_nudges"
    NIGHTSHIFT = "nightshift.cycle_project"
    CHAT_REPLY = "chat.reply"
    CODE_GEN_MVP = "code.generate_mvp"
    RESEARCH_REPORT = "research.generate_report"
    BROWSER_CHECK = "browser.check_page"
    BRAIN_REFRESH = "brain.refresh"
    SCHEDULER_RUN_RECURRING = "scheduler.run_recurring"
    RUNTIME_PROVISION = "runtime.provision_project"


class AgentKey:
    CEO = "ceo"
    RESEARCH = "research"
    DESIGN = "design"
    ENGINEERING = "engineering"
    NIGHTSHIFT = "night_shift"
    OUTREACH = "outreach"
    SYSTEM = "system"
    BRAIN = "brain"
    PROVISIONER = "provisioner"


DEFAULT_HEAVY_JOB_TYPES = frozenset({
    JobType.PHASE0,
    JobType.PHASE_GEN,
    JobType.CODE_GEN_MVP,
    JobType.RESEARCH_REPORT,
    JobType.BROWSER_CHECK,
})

DEFAULT_REALTIME_JOB_TYPES = frozenset({JobType.CHAT_REPLY})
