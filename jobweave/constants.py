"""Default values shared across jobweave components."""

HOUR = 60 * 60

DEFAULT_QUEUE = "default"
DEFAULT_PRIORITY = 3
DEFAULT_MAX_ATTEMPTS = 3
MAX_PRIORITY = 9

DEFAULT_PROGRESS_TTL = 24 * HOUR
DEFAULT_WORKFLOW_TTL = 72 * HOUR
DEFAULT_BATCH_TTL = 24 * HOUR
DEFAULT_PIPELINE_TTL = 24 * HOUR
DEFAULT_STATS_TTL = 24 * HOUR
DEFAULT_JOB_TTL = 7 * 24 * HOUR

DEFAULT_MAX_WORKFLOW_STEPS = 100
DEFAULT_BATCH_SIZE = 100
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_WAIT_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 300.0
DEFAULT_SCHEDULER_INTERVAL = 15.0

DEAD_LETTER_QUEUE = "dead_letter"
DEAD_LETTER_WORKER = "jobweave.dead_letter"

PROGRESS_TOPIC = "job_progress:{job_id}"

# Reserved argument keys injected into job args.
WORKFLOW_ID_ARG = "__workflow_id__"
STEP_ID_ARG = "__step_id__"
CONTEXT_ARG = "__context__"
PIPELINE_ARG = "__pipeline__"
BATCH_ARG = "__batch__"
CALLBACK_ARG = "__callback__"
