"""Shared constants for storyloop."""

# Scoring weights
WEIGHT_PROXIMITY = 5.0
WEIGHT_TAG_OVERLAP = 3.0
WEIGHT_BLOCKER = 2.0
WEIGHT_PRIORITY = 1.0
WEIGHT_INVERSE_COMPLEXITY = 0.5

# Blocker count and priority are divided by this and clamped to 1.0
SCORE_NORMALIZER = 10

# Validation gate vocabulary
VAGUE_TERMS = (
    "properly",
    "correctly",
    "appropriate",
    "handle",
    "improve",
    "better",
    "settings",
)

AUTO_CLARIFICATION = "Auto mode: Make reasonable assumptions based on codebase patterns."

# Signal polling (seconds)
DEFAULT_SIGNAL_TIMEOUT = 30
DEFAULT_SIGNAL_POLL_INTERVAL = 1.0

# CLI exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_GATE = 3
EXIT_BLOCKED = 8
