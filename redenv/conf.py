"""Redenv defaults, overridable through environment variables."""
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


REDIS_URL = os.environ.get("REDENV_REDIS_URL", "redis://localhost:6379/0")

DEFAULT_ENVIRONMENT = os.environ.get("REDENV_ENVIRONMENT", "development")

# history kept per secret when a project does not set ``historyLimit``
DEFAULT_HISTORY_LIMIT = 10

# client cache (seconds)
CACHE_TTL = _int_env("REDENV_CACHE_TTL", 300)
CACHE_SWR = _int_env("REDENV_CACHE_SWR", 86400)
CACHE_MAX_ENTRIES = 1000

# store key layout
META_PREFIX = "meta@"
ENV_SEPARATOR = ":"
EPHEMERAL_PREFIX = "ephemeral:"

SERVICE_TOKEN_PREFIX = "stk_"
EPHEMERAL_TOKEN_PREFIX = "etk_"
SECRET_TOKEN_PREFIX = "redenv_sk_"

# optimistic re-check of the head version before a history overwrite
WRITE_RETRIES = 3
