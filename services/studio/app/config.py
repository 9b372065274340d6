import os
import socket


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Storage backend for the stream registry, event log, threads and apps: memory|redis
STUDIO_STORE = os.getenv("STUDIO_STORE", "memory").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0").strip()
REDIS_PREFIX = os.getenv("STUDIO_REDIS_PREFIX", "studio")

# Identifies this process in stream records (useful with several replicas)
INSTANCE_ID = os.getenv("STUDIO_INSTANCE_ID") or f"{socket.gethostname()}-{os.getpid()}"

APP_ID_HEADER = os.getenv("STUDIO_APP_ID_HEADER", "X-App-Id")
USER_ID_HEADER = os.getenv("STUDIO_USER_ID_HEADER", "X-User-Id")
REQUEST_ID_HEADER = os.getenv("STUDIO_REQUEST_ID_HEADER", "X-Request-Id")

# Stream lease and watcher timings (seconds)
STREAM_LEASE_TTL = _env_float("STUDIO_STREAM_LEASE_TTL", 30.0)
STREAM_HEARTBEAT_INTERVAL = _env_float("STUDIO_STREAM_HEARTBEAT_INTERVAL", 10.0)
STREAM_POLL_INTERVAL = _env_float("STUDIO_STREAM_POLL_INTERVAL", 0.25)

# Bounded wait used after a stop request
STOP_WAIT_TIMEOUT = _env_float("STUDIO_STOP_WAIT_TIMEOUT", 8.0)
STOP_WAIT_INITIAL_DELAY = _env_float("STUDIO_STOP_WAIT_INITIAL_DELAY", 0.1)
STOP_WAIT_MAX_DELAY = _env_float("STUDIO_STOP_WAIT_MAX_DELAY", 1.0)
STOP_WAIT_BACKOFF = _env_float("STUDIO_STOP_WAIT_BACKOFF", 2.0)
CLEAR_ON_STOP_TIMEOUT = _env_bool("STUDIO_CLEAR_ON_STOP_TIMEOUT", "true")

# Event log retention
EVENT_RING_MAXLEN = _env_int("STUDIO_EVENT_RING_MAXLEN", 5000)
EVENT_TTL_SECONDS = _env_int("STUDIO_EVENT_TTL_SECONDS", 24 * 60 * 60)
SSE_KEEPALIVE_SECONDS = _env_float("STUDIO_SSE_KEEPALIVE_SECONDS", 15.0)

THREAD_HISTORY_LIMIT = _env_int("STUDIO_THREAD_HISTORY_LIMIT", 1000)

# Remote sandbox (git repositories + dev servers)
SANDBOX_API_URL = os.getenv("SANDBOX_API_URL", "https://api.freestyle.sh").rstrip("/")
SANDBOX_API_KEY = os.getenv("SANDBOX_API_KEY", "")
SANDBOX_TIMEOUT = _env_float("SANDBOX_TIMEOUT", 30.0)

# Model used by the game builder agents (langchain init_chat_model string)
STUDIO_MODEL = os.getenv("STUDIO_MODEL", "anthropic:claude-3-7-sonnet-20250219")
AGENT_MAX_STEPS = _env_int("STUDIO_AGENT_MAX_STEPS", 25)

FRONTEND_URL = os.getenv("FRONTEND_URL")
LOG_LEVEL = os.getenv("STUDIO_LOG_LEVEL", "INFO").upper()
