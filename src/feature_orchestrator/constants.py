"""Define shared constants for the orchestrator state layout and defaults."""

STATE_DIR_NAME = ".orchestrator"
CONFIG_FILE = "config.yaml"
FEATURES_FILE = "features.yaml"
TASKS_FILE = "tasks.yaml"
SESSIONS_FILE = "sessions.yaml"
TRANSCRIPTS_DIR = "transcripts"
PROMPTS_DIR = "prompts"

SCHEMA_VERSION = 1

DEFAULT_WORKER_COMMAND = "claude --session-id {session_id} --output-format stream-json --verbose -p {prompt}"
DEFAULT_RESUME_COMMAND = "claude --resume {session_id} --output-format stream-json --verbose -p {prompt}"
WORKER_COMMAND_ENV = "FEATURE_ORCHESTRATOR_WORKER_COMMAND"

DEFAULT_MAX_PARALLEL_STARTS = 5
DEFAULT_LIVENESS_WINDOW_SECONDS = 300
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_KILL_GRACE_SECONDS = 5.0
DEFAULT_TASK_ESTIMATE_MINUTES = 10
STDERR_TAIL_LINES = 20
STORE_WRITE_RETRIES = 3

DEFAULT_APPROVAL_MARKERS = (
    r"needs?[ _-]?approval",
    r"permission[ _-]?request",
    r"approve this",
)

RESUME_PROMPT = "Continue the task from where you left off."
RESTART_INTERRUPTED_ERROR = "interrupted by orchestrator restart"
