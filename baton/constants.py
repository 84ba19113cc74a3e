"""Default values shared across baton components."""

DEFAULT_APPROVAL_THRESHOLD = 0.7
DEFAULT_CONTEXT_TOKEN_BUDGET = 4000
DEFAULT_CONVERSATION_WINDOW = 10
DEFAULT_STREAMING_THRESHOLD_SECONDS = 5.0

SHARED_CONTEXT_MAX_ATTEMPTS = 3
SHARED_CONTEXT_BACKOFF_SECONDS = 0.1

RECENT_STEP_OUTPUTS_KEPT = 3
SUMMARY_STRING_LIMIT = 100

APPROVAL_REMINDER_HOURS = 24
APPROVAL_TIMEOUT_HOURS = 72
APPROVAL_CHECK_INTERVAL_SECONDS = 3600

TIMEOUT_PAUSE_MAX_ATTEMPTS = 3
TIMEOUT_PAUSE_BACKOFF_SECONDS = 0.1

CONTEXT_REFRESH_AFTER_HOURS = 24

SYSTEM_ACTOR = "system"
