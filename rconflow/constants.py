"""Shared constants for rconflow."""

SUPPORTED_DEFINITION_VERSIONS = ("1.0",)
CURRENT_DEFINITION_VERSION = "1.0"

DEFAULT_EVENT_TOPIC = "events"

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000

DEFAULT_KICK_REASON = "Kicked by workflow"
DEFAULT_BAN_REASON = "Banned by workflow"

# step statuses ordered so "running" sorts before the terminal row of an attempt
STEP_STATUS_ORDER = {"running": 0, "completed": 1, "failed": 1, "error": 1}
