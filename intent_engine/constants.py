SYSTEM_ACTOR_ID = "00000000-0000-0000-0000-000000000000"
WORKER_ACTOR_ID = "system:worker"
DEFAULT_AUDIT_TIMEOUT_SECONDS = 2.0
DEFAULT_WORKER_MAX_ATTEMPTS = 3
