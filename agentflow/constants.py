"""Default values shared across agentflow modules."""

DEFAULT_MAX_LOOP_ITERATIONS = 1000
DEFAULT_MAX_BACKOFF = 60.0
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_CONFLICT_RETRIES = 3
DEFAULT_POLL_INTERVAL = 0.05

RESERVED_STEP_IDS = frozenset({"inputs", "loop", "compensating"})
SCOPE_SEPARATORS = ("/", "[", "]")

COMPENSATION_SCOPE = "compensation"
