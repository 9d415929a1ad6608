"""Default values and well-known names used across approvalflow."""

DEFAULT_DEFINITION_VERSION = 1
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_PRIORITY = 5
DEFAULT_STEP_RETRY_ATTEMPTS = 0

DEFAULT_MAX_CONCURRENT_CALLS = 8
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0

APPROVAL_REQUEST_TEMPLATE = "step_approval_required"
REJECTION_PREFIX = "Step rejected: "

NOTIFICATION_QUEUE = "approvalflow:notifications"
