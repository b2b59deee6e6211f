DEFAULT_QUEUE_NAME = "workflow-execution"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 5.0  # seconds
DEFAULT_MAX_DELAY = 300.0  # seconds
DEFAULT_JITTER = 0.2
DEFAULT_STEP_TIMEOUT = 300.0  # seconds
DEFAULT_VISIBILITY_TIMEOUT = 600.0  # seconds
DEFAULT_RECOVERY_INTERVAL = 60.0  # seconds
DEFAULT_RECOVERY_GRACE = 60.0  # seconds
CONTROL_CAS_ATTEMPTS = 5
