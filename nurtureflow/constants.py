"""Engine-wide defaults."""

DEFAULT_LOOP_GUARD_THRESHOLD = 3
DEFAULT_MAX_ACTION_RETRIES = 3
DEFAULT_MAX_CASCADE_STEPS = 50
DEFAULT_TICK_LEASE_SECONDS = 300.0
DEFAULT_DELAY_UNIT = "hours"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_CONCURRENCY = 10

DELAY_UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}
