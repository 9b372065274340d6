from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from redis.asyncio import Redis

from services.studio.app import config

logger = logging.getLogger(__name__)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ConversationStore(Protocol):
    async def create_thread(self, thread_id: str, resource_id: str) -> Dict[str, Any]: ...
    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]: ...
    async def append_message(self, thread_id: str, message: Dict[str, Any]) -> None: ...
    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...
    async def delete_thread(self, thread_id: str) -> None: ...
    async def close(self) -> None: ...


# ---------------- InMemoryConversationStore ----------------

class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._threads: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _ensure(self, thread_id: str, resource_id: str) -> Dict[str, Any]:
        meta = self._threads.get(thread_id)
        if meta is None:
            meta = {"id": thread_id, "resourceId": resource_id, "createdAt": _utc_iso()}
            self._threads[thread_id] = meta
            self._messages[thread_id] = []
        return meta

    async def create_thread(self, thread_id: str, resource_id: str) -> Dict[str, Any]:
        async with self._lock:
            return dict(self._ensure(thread_id, resource_id))

    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            meta = self._threads.get(thread_id)
            return dict(meta) if meta else None

    async def append_message(self, thread_id: str, message: Dict[str, Any]) -> None:
        async with self._lock:
            self._ensure(thread_id, thread_id)
            self._messages[thread_id].append(dict(message))

    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            msgs = self._messages.get(thread_id, [])
            if limit:
                msgs = msgs[-limit:]
            return [dict(m) for m in msgs]

    async def delete_thread(self, thread_id: str) -> None:
        async with self._lock:
            self._threads.pop(thread_id, None)
            self._messages.pop(thread_id, None)

    async def close(self) -> None:
        return None


# ---------------- RedisConversationStore ----------------

class RedisConversationStore(ConversationStore):
    """Thread meta in a hash, messages as JSON strings in a list (RPUSH/LRANGE)."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "studio",
        client: Optional[Redis] = None,
    ):
        self._redis: Redis = client or Redis.from_url(url, decode_responses=True)
        self._owns_client = client is None
        self._prefix = prefix
        self._closed = False

    # Key helpers
    def _k_meta(self, thread_id: str) -> str: return f"{self._prefix}:threads:{thread_id}:meta"
    def _k_messages(self, thread_id: str) -> str: return f"{self._prefix}:threads:{thread_id}:messages"

    async def create_thread(self, thread_id: str, resource_id: str) -> Dict[str, Any]:
        meta = {"id": thread_id, "resourceId": resource_id, "createdAt": _utc_iso()}
        key = self._k_meta(thread_id)
        # HSETNX keeps the original createdAt if the thread already exists
        pipe = self._redis.pipeline(transaction=True)
        for field, value in meta.items():
            pipe.hsetnx(key, field, value)
        await pipe.execute()
        return await self._redis.hgetall(key)

    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        meta = await self._redis.hgetall(self._k_meta(thread_id))
        return meta or None

    async def append_message(self, thread_id: str, message: Dict[str, Any]) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.hsetnx(self._k_meta(thread_id), "id", thread_id)
        pipe.hsetnx(self._k_meta(thread_id), "resourceId", thread_id)
        pipe.hsetnx(self._k_meta(thread_id), "createdAt", _utc_iso())
        pipe.rpush(self._k_messages(thread_id), json.dumps(message, separators=(",", ":")))
        await pipe.execute()

    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        start = -limit if limit else 0
        raw = await self._redis.lrange(self._k_messages(thread_id), start, -1)
        out: List[Dict[str, Any]] = []
        for item in raw:
            try:
                out.append(json.loads(item))
            except json.JSONDecodeError:
                logger.warning(f"skipping unreadable message in thread {thread_id}")
        return out

    async def delete_thread(self, thread_id: str) -> None:
        await self._redis.delete(self._k_meta(thread_id), self._k_messages(thread_id))

    async def close(self) -> None:
        if not self._closed and self._owns_client:
            self._closed = True
            await self._redis.aclose()


def get_conversation_store_from_env(client: Optional[Redis] = None) -> ConversationStore:
    if config.STUDIO_STORE == "redis":
        return RedisConversationStore(config.REDIS_URL, prefix=config.REDIS_PREFIX, client=client)
    return InMemoryConversationStore()
