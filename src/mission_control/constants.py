STATE_DIR_NAME = ".mission_control"
CONFIG_FILE = "config.yaml"
STORE_FILE = "workflow.yaml"
STORE_LOCK_FILE = "workflow.lock"
STORE_SCHEMA_VERSION = 1
LOCK_TIMEOUT = 30  # seconds

DEFAULT_TICKET_PREFIX = "TASK"
TICKET_NUMBER_WIDTH = 3

DEFAULT_MIGRATION_BATCH_SIZE = 100
DEFAULT_BACKLOG_LIMIT = 10
DEFAULT_WORKLOAD_PENALTY = 0.2
DEFAULT_PREVIEW_CHARS = 100
DEFAULT_STALE_AGENT_SECONDS = 300

GENERAL_EPIC_TITLE = "General Tasks"
GENERAL_EPIC_DESCRIPTION = (
    "Default epic for tasks that were created before epic association was "
    "required. Contains migrated tasks without an epic."
)

# operation -> (max_calls, window_ms)
DEFAULT_RATE_LIMITS: dict[str, tuple[int, int]] = {
    "create_task": (30, 60_000),
    "update_status": (60, 60_000),
    "add_dependency": (30, 60_000),
    "post_comment": (30, 60_000),
    "heartbeat": (6, 60_000),
}

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 5000
MAX_TAGS = 10
TAG_MAX_LENGTH = 50
COMMENT_MAX_LENGTH = 10_000
MAX_INFERRED_TAGS = 5
