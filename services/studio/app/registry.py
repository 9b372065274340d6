from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from services.studio.app import config

logger = logging.getLogger(__name__)

# Errors worth retrying; anything else (bad script, wrong type) propagates at once
TRANSIENT_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StreamState(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class StreamRecord:
    app_id: str
    session_id: str
    state: str                 # StreamState value; absence of a record means no stream
    started_at: str            # ISO-8601 Z
    updated_at: str
    instance_id: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "StreamRecord":
        data = json.loads(raw)
        return cls(
            app_id=data["app_id"],
            session_id=data["session_id"],
            state=data.get("state", StreamState.RUNNING.value),
            started_at=data.get("started_at", ""),
            updated_at=data.get("updated_at", ""),
            instance_id=data.get("instance_id", ""),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "appId": self.app_id,
            "sessionId": self.session_id,
            "state": self.state,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "instanceId": self.instance_id,
        }


class StreamRegistry(Protocol):
    async def get(self, app_id: str) -> Optional[StreamRecord]: ...
    async def acquire(self, app_id: str, session_id: str, ttl_seconds: float, *, instance_id: str = "") -> bool: ...
    async def request_stop(self, app_id: str) -> Optional[StreamRecord]: ...
    async def refresh(self, app_id: str, session_id: str, ttl_seconds: float) -> bool: ...
    async def release(self, app_id: str, session_id: str) -> bool: ...
    async def clear(self, app_id: str) -> None: ...
    async def list_active(self) -> List[StreamRecord]: ...
    async def adapter_info(self) -> Dict[str, Any]: ...
    async def close(self) -> None: ...


# ---------------- InMemoryStreamRegistry ----------------

class InMemoryStreamRegistry(StreamRegistry):
    """Single-process registry. Leases are emulated with monotonic deadlines."""

    def __init__(self) -> None:
        self._records: Dict[str, StreamRecord] = {}
        self._deadlines: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _live(self, app_id: str) -> Optional[StreamRecord]:
        rec = self._records.get(app_id)
        if rec is None:
            return None
        if self._deadlines.get(app_id, 0.0) <= time.monotonic():
            logger.info(f"Stream lease for app {app_id} expired (session {rec.session_id})")
            self._records.pop(app_id, None)
            self._deadlines.pop(app_id, None)
            return None
        return rec

    async def get(self, app_id: str) -> Optional[StreamRecord]:
        async with self._lock:
            rec = self._live(app_id)
            return StreamRecord(**asdict(rec)) if rec else None

    async def acquire(self, app_id: str, session_id: str, ttl_seconds: float, *, instance_id: str = "") -> bool:
        async with self._lock:
            if self._live(app_id) is not None:
                return False
            now = _utc_iso()
            self._records[app_id] = StreamRecord(
                app_id=app_id,
                session_id=session_id,
                state=StreamState.RUNNING.value,
                started_at=now,
                updated_at=now,
                instance_id=instance_id,
            )
            self._deadlines[app_id] = time.monotonic() + ttl_seconds
            return True

    async def request_stop(self, app_id: str) -> Optional[StreamRecord]:
        async with self._lock:
            rec = self._live(app_id)
            if rec is None:
                return None
            if rec.state != StreamState.STOPPING.value:
                rec.state = StreamState.STOPPING.value
                rec.updated_at = _utc_iso()
            return StreamRecord(**asdict(rec))

    async def refresh(self, app_id: str, session_id: str, ttl_seconds: float) -> bool:
        async with self._lock:
            rec = self._live(app_id)
            if rec is None or rec.session_id != session_id:
                return False
            self._deadlines[app_id] = time.monotonic() + ttl_seconds
            return True

    async def release(self, app_id: str, session_id: str) -> bool:
        async with self._lock:
            rec = self._live(app_id)
            if rec is None or rec.session_id != session_id:
                return False
            self._records.pop(app_id, None)
            self._deadlines.pop(app_id, None)
            return True

    async def clear(self, app_id: str) -> None:
        async with self._lock:
            self._records.pop(app_id, None)
            self._deadlines.pop(app_id, None)

    async def list_active(self) -> List[StreamRecord]:
        async with self._lock:
            out = []
            for app_id in list(self._records):
                rec = self._live(app_id)
                if rec is not None:
                    out.append(StreamRecord(**asdict(rec)))
            return out

    async def adapter_info(self) -> Dict[str, Any]:
        return {"adapter": "memory", "details": {"streams": len(self._records)}}

    async def close(self) -> None:
        return None


# ---------------- RedisStreamRegistry ----------------

# KEYS[1] = record key, ARGV[1] = updated_at
_REQUEST_STOP_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local rec = cjson.decode(raw)
if rec['state'] ~= 'stopping' then
  rec['state'] = 'stopping'
  rec['updated_at'] = ARGV[1]
  raw = cjson.encode(rec)
  redis.call('SET', KEYS[1], raw, 'KEEPTTL')
end
return raw
"""

# KEYS[1] = record key, ARGV[1] = session_id, ARGV[2] = ttl ms
_REFRESH_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
if cjson.decode(raw)['session_id'] ~= ARGV[1] then return 0 end
redis.call('PEXPIRE', KEYS[1], ARGV[2])
return 1
"""

# KEYS[1] = record key, ARGV[1] = session_id
_RELEASE_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
if cjson.decode(raw)['session_id'] ~= ARGV[1] then return 0 end
redis.call('DEL', KEYS[1])
return 1
"""


class RedisStreamRegistry(StreamRegistry):
    """
    Redis-backed registry shared by every server instance:
    - One JSON record per app, created with SET NX PX (single winner)
    - Owner-checked refresh/release and atomic stop flagging via Lua
    - Lease TTL so a crashed owner cannot hold an app forever
    - Retries with exponential backoff on transient errors
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "studio",
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        max_retries: int = 3,
        retry_delay: float = 0.1,
        client: Optional[Redis] = None,
    ):
        self._redis: Redis = client or Redis.from_url(
            url,
            decode_responses=True,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        self._owns_client = client is None
        self._prefix = prefix
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._closed = False
        self._request_stop_script = self._redis.register_script(_REQUEST_STOP_LUA)
        self._refresh_script = self._redis.register_script(_REFRESH_LUA)
        self._release_script = self._redis.register_script(_RELEASE_LUA)

    # Key helpers
    def _k_stream(self, app_id: str) -> str: return f"{self._prefix}:streams:{app_id}"

    async def _retry_operation(self, operation, *args, **kwargs):
        """Execute Redis operation with retry logic"""
        last_error: Optional[Exception] = None
        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)
            except TRANSIENT_REDIS_ERRORS as e:
                last_error = e
            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay * (2 ** attempt))
        logger.warning(f"Redis operation failed after {self._max_retries} attempts: {last_error}")
        raise last_error or RuntimeError("Operation failed")

    async def get(self, app_id: str) -> Optional[StreamRecord]:
        raw = await self._retry_operation(self._redis.get, self._k_stream(app_id))
        return StreamRecord.from_json(raw) if raw else None

    async def acquire(self, app_id: str, session_id: str, ttl_seconds: float, *, instance_id: str = "") -> bool:
        now = _utc_iso()
        rec = StreamRecord(
            app_id=app_id,
            session_id=session_id,
            state=StreamState.RUNNING.value,
            started_at=now,
            updated_at=now,
            instance_id=instance_id,
        )
        # Not retried: a repeated SET NX would lose to our own first write
        try:
            ok = await self._redis.set(
                self._k_stream(app_id),
                rec.to_json(),
                nx=True,
                px=int(ttl_seconds * 1000),
            )
        except TRANSIENT_REDIS_ERRORS:
            # The write may have landed before the reply was lost
            current = await self.get(app_id)
            if current is not None and current.session_id == session_id:
                logger.warning(f"acquire reply for app {app_id} lost; record is ours")
                return True
            raise
        return bool(ok)

    async def request_stop(self, app_id: str) -> Optional[StreamRecord]:
        raw = await self._retry_operation(
            self._request_stop_script, keys=[self._k_stream(app_id)], args=[_utc_iso()]
        )
        return StreamRecord.from_json(raw) if raw else None

    async def refresh(self, app_id: str, session_id: str, ttl_seconds: float) -> bool:
        res = await self._retry_operation(
            self._refresh_script,
            keys=[self._k_stream(app_id)],
            args=[session_id, int(ttl_seconds * 1000)],
        )
        return int(res or 0) == 1

    async def release(self, app_id: str, session_id: str) -> bool:
        res = await self._retry_operation(
            self._release_script, keys=[self._k_stream(app_id)], args=[session_id]
        )
        return int(res or 0) == 1

    async def clear(self, app_id: str) -> None:
        await self._retry_operation(self._redis.delete, self._k_stream(app_id))

    async def list_active(self) -> List[StreamRecord]:
        out: List[StreamRecord] = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:streams:*", count=100):
            raw = await self._redis.get(key)
            if raw:
                out.append(StreamRecord.from_json(raw))
        return out

    async def health_check(self) -> Dict[str, Any]:
        """Connectivity and read/write check"""
        try:
            ping_result = await self._redis.ping()
            test_key = f"{self._prefix}:healthcheck"
            await self._redis.set(test_key, "ok", ex=10)
            test_value = await self._redis.get(test_key)
            await self._redis.delete(test_key)
            return {"healthy": True, "ping": ping_result, "read_write": test_value == "ok"}
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def close(self) -> None:
        """Gracefully close Redis connection"""
        if not self._closed and self._owns_client:
            self._closed = True
            await self._redis.aclose()

    async def adapter_info(self) -> Dict[str, Any]:
        health = await self.health_check()
        return {
            "adapter": "redis",
            "details": {
                "prefix": self._prefix,
                "max_retries": self._max_retries,
                "health": health,
            },
        }


def get_registry_from_env(client: Optional[Redis] = None) -> StreamRegistry:
    if config.STUDIO_STORE == "redis":
        return RedisStreamRegistry(config.REDIS_URL, prefix=config.REDIS_PREFIX, client=client)
    return InMemoryStreamRegistry()
