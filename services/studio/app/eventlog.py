from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol

from redis.asyncio import Redis

from services.studio.app import config

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"finish", "cancelled", "error"})
HEARTBEAT = "heartbeat"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_seq(last_event_id: Optional[str]) -> Optional[int]:
    if not last_event_id:
        return None
    try:
        return int(last_event_id)
    except ValueError:
        # unknown id format -> replay from the start
        return None


@dataclass
class Event:
    id: str                    # monotonic sequence within the stream, as string
    ts: str                    # ISO-8601 Z
    type: str                  # SSE 'event' name
    data: Dict[str, Any]       # JSON payload
    stream_id: str

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> bytes:
        if self.type == HEARTBEAT:
            return b": keepalive\n\n"
        lines = []
        if self.id:
            lines.append(f"id: {self.id}")
        if self.type:
            lines.append(f"event: {self.type}")
        lines.append("data: " + json.dumps(self.data, separators=(",", ":")))
        return ("\n".join(lines) + "\n\n").encode("utf-8")


def _heartbeat(stream_id: str) -> Event:
    return Event(id="", ts=_utc_iso(), type=HEARTBEAT, data={}, stream_id=stream_id)


class EventLog(Protocol):
    async def append(self, stream_id: str, event_type: str, data: Dict[str, Any]) -> Event: ...
    async def events_since(self, stream_id: str, last_event_id: Optional[str]) -> List[Event]: ...
    def subscribe(
        self, stream_id: str, last_event_id: Optional[str] = None, *, idle_timeout: float = ...
    ) -> AsyncIterator[Event]: ...
    async def bind_app(self, app_id: str, stream_id: str) -> None: ...
    async def latest_stream(self, app_id: str) -> Optional[str]: ...
    async def adapter_info(self) -> Dict[str, Any]: ...
    async def close(self) -> None: ...


# ---------------- InMemoryEventLog ----------------

class InMemoryEventLog(EventLog):
    class _Stream:
        __slots__ = ("stream_id", "events", "next_seq", "subscribers", "done", "finished_at")

        def __init__(self, stream_id: str, maxlen: int):
            self.stream_id = stream_id
            self.events: Deque[Event] = deque(maxlen=maxlen)
            self.next_seq = 1
            self.subscribers: set[asyncio.Queue[Event]] = set()
            self.done = False
            self.finished_at: Optional[float] = None

    def __init__(
        self,
        *,
        ring_maxlen: int = config.EVENT_RING_MAXLEN,
        finished_ttl: float = config.EVENT_TTL_SECONDS,
    ):
        self._streams: Dict[str, InMemoryEventLog._Stream] = {}
        self._latest: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._ring_maxlen = ring_maxlen
        # Finished streams stay readable this long, like the Redis key TTL
        self._finished_ttl = finished_ttl

    def _evict_finished(self) -> None:
        cutoff = time.monotonic() - self._finished_ttl
        expired = {
            sid for sid, rec in self._streams.items()
            if rec.finished_at is not None and rec.finished_at <= cutoff
        }
        if not expired:
            return
        for sid in expired:
            del self._streams[sid]
        self._latest = {app: sid for app, sid in self._latest.items() if sid not in expired}
        logger.debug(f"evicted {len(expired)} finished event streams")

    async def append(self, stream_id: str, event_type: str, data: Dict[str, Any]) -> Event:
        async with self._lock:
            self._evict_finished()
            rec = self._streams.get(stream_id)
            if rec is None:
                rec = self._streams[stream_id] = InMemoryEventLog._Stream(stream_id, self._ring_maxlen)
            if rec.done:
                raise RuntimeError(f"stream {stream_id} already finished")
            evt = Event(id=str(rec.next_seq), ts=_utc_iso(), type=event_type, data=data, stream_id=stream_id)
            rec.next_seq += 1
            rec.events.append(evt)
            if evt.terminal:
                rec.done = True
                rec.finished_at = time.monotonic()
            # unbounded queues, put_nowait cannot block
            for q in rec.subscribers:
                q.put_nowait(evt)
            return evt

    async def events_since(self, stream_id: str, last_event_id: Optional[str]) -> List[Event]:
        async with self._lock:
            rec = self._streams.get(stream_id)
            if rec is None:
                raise KeyError(stream_id)
            last = _parse_seq(last_event_id)
            if last is None:
                return list(rec.events)
            return [e for e in rec.events if int(e.id) > last]

    async def subscribe(
        self,
        stream_id: str,
        last_event_id: Optional[str] = None,
        *,
        idle_timeout: float = config.SSE_KEEPALIVE_SECONDS,
    ) -> AsyncIterator[Event]:
        # Backfill and registration happen under one lock so no event falls in between
        async with self._lock:
            rec = self._streams.get(stream_id)
            if rec is None:
                raise KeyError(stream_id)
            last = _parse_seq(last_event_id)
            backfill = [e for e in rec.events if last is None or int(e.id) > last]
            q: Optional[asyncio.Queue[Event]] = None
            if not rec.done:
                q = asyncio.Queue()
                rec.subscribers.add(q)

        try:
            for evt in backfill:
                yield evt
            if q is None:
                return
            while True:
                try:
                    evt = await asyncio.wait_for(q.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    yield _heartbeat(stream_id)
                    continue
                yield evt
                if evt.terminal:
                    return
        finally:
            if q is not None:
                async with self._lock:
                    rec2 = self._streams.get(stream_id)
                    if rec2 is not None:
                        rec2.subscribers.discard(q)

    async def bind_app(self, app_id: str, stream_id: str) -> None:
        async with self._lock:
            self._evict_finished()
            if stream_id not in self._streams:
                self._streams[stream_id] = InMemoryEventLog._Stream(stream_id, self._ring_maxlen)
            self._latest[app_id] = stream_id

    async def latest_stream(self, app_id: str) -> Optional[str]:
        async with self._lock:
            return self._latest.get(app_id)

    async def adapter_info(self) -> Dict[str, Any]:
        return {"adapter": "memory", "details": {"streams": len(self._streams)}}

    async def close(self) -> None:
        return None


# ---------------- RedisEventLog ----------------

class RedisEventLog(EventLog):
    """
    Redis Streams event log: INCR for sequence ids, XADD with approximate MAXLEN,
    XRANGE for backfill and XREAD BLOCK for the live tail. Keys expire after ttl_seconds.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "studio",
        ttl_seconds: int = config.EVENT_TTL_SECONDS,
        maxlen: int = config.EVENT_RING_MAXLEN,
        client: Optional[Redis] = None,
    ):
        self._redis: Redis = client or Redis.from_url(url, decode_responses=True)
        self._owns_client = client is None
        self._prefix = prefix
        self._ttl_seconds = ttl_seconds
        self._maxlen = maxlen
        self._closed = False

    # Key helpers
    def _k_events(self, stream_id: str) -> str: return f"{self._prefix}:events:{stream_id}"
    def _k_seq(self, stream_id: str) -> str: return f"{self._prefix}:events:{stream_id}:seq"
    def _k_latest(self, app_id: str) -> str: return f"{self._prefix}:latest:{app_id}"

    @staticmethod
    def _to_event(stream_id: str, fields: Dict[str, str]) -> Event:
        data_str = fields.get("data") or "{}"
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError:
            payload = {"raw": data_str}
        return Event(
            id=fields.get("seq") or "0",
            ts=fields.get("ts") or _utc_iso(),
            type=fields.get("type") or "message",
            data=payload,
            stream_id=stream_id,
        )

    async def append(self, stream_id: str, event_type: str, data: Dict[str, Any]) -> Event:
        seq = await self._redis.incr(self._k_seq(stream_id))
        evt = Event(id=str(seq), ts=_utc_iso(), type=event_type, data=data, stream_id=stream_id)
        pipe = self._redis.pipeline()
        pipe.xadd(
            self._k_events(stream_id),
            fields={
                "seq": evt.id,
                "ts": evt.ts,
                "type": evt.type,
                "data": json.dumps(evt.data, separators=(",", ":")),
            },
            maxlen=self._maxlen,
            approximate=True,
        )
        if self._ttl_seconds > 0:
            pipe.expire(self._k_events(stream_id), self._ttl_seconds)
            pipe.expire(self._k_seq(stream_id), self._ttl_seconds)
        await pipe.execute()
        return evt

    async def _exists(self, stream_id: str) -> bool:
        return bool(await self._redis.exists(self._k_seq(stream_id)))

    async def events_since(self, stream_id: str, last_event_id: Optional[str]) -> List[Event]:
        if not await self._exists(stream_id):
            raise KeyError(stream_id)
        entries = await self._redis.xrange(self._k_events(stream_id), min="-", max="+")
        last = _parse_seq(last_event_id)
        out = [self._to_event(stream_id, fields) for _id, fields in entries]
        if last is not None:
            out = [e for e in out if int(e.id) > last]
        return out

    async def subscribe(
        self,
        stream_id: str,
        last_event_id: Optional[str] = None,
        *,
        idle_timeout: float = config.SSE_KEEPALIVE_SECONDS,
    ) -> AsyncIterator[Event]:
        if not await self._exists(stream_id):
            raise KeyError(stream_id)
        key = self._k_events(stream_id)
        last = _parse_seq(last_event_id)

        # Backfill, remembering the Redis entry id so the live tail starts right after it
        cursor = "0-0"
        for entry_id, fields in await self._redis.xrange(key, min="-", max="+"):
            cursor = entry_id
            evt = self._to_event(stream_id, fields)
            if last is not None and int(evt.id) <= last:
                if evt.terminal:
                    return
                continue
            yield evt
            if evt.terminal:
                return

        block_ms = max(1, int(idle_timeout * 1000))
        while True:
            resp = await self._redis.xread({key: cursor}, block=block_ms, count=100)
            if not resp:
                yield _heartbeat(stream_id)
                continue
            # resp: List[Tuple[stream, List[Tuple[id, fields]]]]
            _, entries = resp[0]
            for entry_id, fields in entries:
                cursor = entry_id
                evt = self._to_event(stream_id, fields)
                yield evt
                if evt.terminal:
                    return

    async def bind_app(self, app_id: str, stream_id: str) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._k_latest(app_id), stream_id, ex=self._ttl_seconds or None)
        # Seq key marks the stream as existing before its first event
        pipe.set(self._k_seq(stream_id), 0, nx=True, ex=self._ttl_seconds or None)
        await pipe.execute()

    async def latest_stream(self, app_id: str) -> Optional[str]:
        return await self._redis.get(self._k_latest(app_id))

    async def adapter_info(self) -> Dict[str, Any]:
        return {
            "adapter": "redis",
            "details": {"prefix": self._prefix, "ttl_seconds": self._ttl_seconds, "maxlen": self._maxlen},
        }

    async def close(self) -> None:
        if not self._closed and self._owns_client:
            self._closed = True
            await self._redis.aclose()


def get_event_log_from_env(client: Optional[Redis] = None) -> EventLog:
    if config.STUDIO_STORE == "redis":
        return RedisEventLog(config.REDIS_URL, prefix=config.REDIS_PREFIX, client=client)
    return InMemoryEventLog()
