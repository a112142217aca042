"""Default values shared by the engine, driver and configuration."""

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_RETRY_BACKOFF_MULTIPLIER = 2.0
DEFAULT_TIMEOUT_MINUTES = 60

DEFAULT_LEASE_SECONDS = 300
DEFAULT_MAX_CONCURRENCY = 4

DEFAULT_WORKFLOW_VERSION = "1.0.0"
