"""Centralized constants for remediator."""

# Monitoring
DEFAULT_SAMPLING_INTERVAL_SECONDS = 5.0
DEFAULT_WINDOW_SIZE = 12  # one minute of 5 s samples

# Healing loop
DEFAULT_HEALING_INTERVAL_SECONDS = 10.0
DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_EVENT_LOG_SIZE = 1000
DEFAULT_INCIDENT_HISTORY_SIZE = 256  # per-patch records kept by generator and sandbox
DEFAULT_REMEDIATION_COOLDOWN_SECONDS = 300.0  # per bug type

# Detection
DEFAULT_FOREST_TREES = 100
DEFAULT_SIMILARITY_THRESHOLD = 0.8
DEFAULT_ANOMALY_THRESHOLD = 0.6
DEFAULT_Z_THRESHOLD = 2.0

# Sandbox
SANDBOX_MEMORY_LIMIT_MB = 256
SANDBOX_MAX_OUTPUT_BYTES = 1024 * 1024
SANDBOX_DEFAULT_TIMEOUT_MS = 5000
DEFAULT_REGRESSION_TOLERANCE = 0.2

# Effectiveness targets reported alongside healing stats
BUG_DETECTION_TARGET = 0.85
PATCH_SUCCESS_TARGET = 0.70
MTTR_TARGET_SECONDS = 5 * 60
