from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from redis.asyncio import Redis

from services.studio.app import config


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# Starter repositories new apps are cloned from
TEMPLATES: Dict[str, Dict[str, str]] = {
    "phaser": {
        "id": "phaser",
        "name": "Phaser",
        "description": "Phaser 3 game inside a Next.js app",
        "repo": "https://github.com/freestyle-sh/freestyle-base-nextjs-shadcn",
    },
}

PERMISSIONS = ("read", "write", "admin")


@dataclass
class AppRecord:
    id: str
    name: str = "Unnamed App"
    description: str = "No description"
    git_repo: str = ""
    created_at: str = field(default_factory=_utc_iso)
    base_id: str = "nextjs-dkjfgdf"
    preview_domain: Optional[str] = None

    @classmethod
    def new(cls, name: str, git_repo: str, **kwargs: Any) -> "AppRecord":
        return cls(id=str(uuid.uuid4()), name=name or "Unnamed App", git_repo=git_repo, **kwargs)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "gitRepo": self.git_repo,
            "createdAt": self.created_at,
            "baseId": self.base_id,
            "previewDomain": self.preview_domain,
        }


@dataclass
class AppUser:
    app_id: str
    user_id: str
    permissions: str
    sandbox_identity: str
    access_token: str
    access_token_id: str
    created_at: str = field(default_factory=_utc_iso)

    def __post_init__(self) -> None:
        if self.permissions not in PERMISSIONS:
            raise ValueError(f"unknown permission {self.permissions!r}")


class AppStore(Protocol):
    async def get_app(self, app_id: str) -> Optional[AppRecord]: ...
    async def create_app(self, app: AppRecord, owner: AppUser) -> AppRecord: ...
    async def list_apps_for_user(self, user_id: str) -> List[AppRecord]: ...
    async def get_app_user(self, app_id: str, user_id: str) -> Optional[AppUser]: ...
    async def delete_app(self, app_id: str) -> bool: ...
    async def close(self) -> None: ...


# ---------------- InMemoryAppStore ----------------

class InMemoryAppStore(AppStore):
    def __init__(self) -> None:
        self._apps: Dict[str, AppRecord] = {}
        self._users: Dict[str, Dict[str, AppUser]] = {}
        self._lock = asyncio.Lock()

    async def get_app(self, app_id: str) -> Optional[AppRecord]:
        async with self._lock:
            return self._apps.get(app_id)

    async def create_app(self, app: AppRecord, owner: AppUser) -> AppRecord:
        async with self._lock:
            if app.id in self._apps:
                raise ValueError(f"app {app.id} already exists")
            self._apps[app.id] = app
            self._users[app.id] = {owner.user_id: owner}
            return app

    async def list_apps_for_user(self, user_id: str) -> List[AppRecord]:
        async with self._lock:
            out = [self._apps[a] for a, users in self._users.items() if user_id in users and a in self._apps]
            return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def get_app_user(self, app_id: str, user_id: str) -> Optional[AppUser]:
        async with self._lock:
            return self._users.get(app_id, {}).get(user_id)

    async def delete_app(self, app_id: str) -> bool:
        async with self._lock:
            self._users.pop(app_id, None)
            return self._apps.pop(app_id, None) is not None

    async def close(self) -> None:
        return None


# ---------------- RedisAppStore ----------------

class RedisAppStore(AppStore):
    """
    App records as hashes plus a per-app hash of access grants and a per-user app set.
    Creation and deletion run in MULTI/EXEC so an app never exists without its grant.
    """

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
    def _k_app(self, app_id: str) -> str: return f"{self._prefix}:apps:{app_id}"
    def _k_users(self, app_id: str) -> str: return f"{self._prefix}:apps:{app_id}:users"
    def _k_user_apps(self, user_id: str) -> str: return f"{self._prefix}:users:{user_id}:apps"

    @staticmethod
    def _app_from_hash(data: Dict[str, str]) -> AppRecord:
        return AppRecord(
            id=data["id"],
            name=data.get("name") or "Unnamed App",
            description=data.get("description") or "No description",
            git_repo=data.get("git_repo", ""),
            created_at=data.get("created_at") or _utc_iso(),
            base_id=data.get("base_id") or "nextjs-dkjfgdf",
            preview_domain=data.get("preview_domain") or None,
        )

    async def get_app(self, app_id: str) -> Optional[AppRecord]:
        data = await self._redis.hgetall(self._k_app(app_id))
        return self._app_from_hash(data) if data else None

    async def create_app(self, app: AppRecord, owner: AppUser) -> AppRecord:
        mapping = {k: v for k, v in asdict(app).items() if v is not None}
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(self._k_app(app.id), mapping=mapping)
        pipe.hset(self._k_users(app.id), owner.user_id, json.dumps(asdict(owner), separators=(",", ":")))
        pipe.sadd(self._k_user_apps(owner.user_id), app.id)
        await pipe.execute()
        return app

    async def list_apps_for_user(self, user_id: str) -> List[AppRecord]:
        app_ids = await self._redis.smembers(self._k_user_apps(user_id))
        out = []
        for app_id in app_ids:
            app = await self.get_app(app_id)
            if app is not None:
                out.append(app)
        return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def get_app_user(self, app_id: str, user_id: str) -> Optional[AppUser]:
        raw = await self._redis.hget(self._k_users(app_id), user_id)
        return AppUser(**json.loads(raw)) if raw else None

    async def delete_app(self, app_id: str) -> bool:
        user_ids = await self._redis.hkeys(self._k_users(app_id))
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(self._k_app(app_id))
        pipe.delete(self._k_users(app_id))
        for user_id in user_ids:
            pipe.srem(self._k_user_apps(user_id), app_id)
        results = await pipe.execute()
        return bool(results[0])

    async def close(self) -> None:
        if not self._closed and self._owns_client:
            self._closed = True
            await self._redis.aclose()


def get_app_store_from_env(client: Optional[Redis] = None) -> AppStore:
    if config.STUDIO_STORE == "redis":
        return RedisAppStore(config.REDIS_URL, prefix=config.REDIS_PREFIX, client=client)
    return InMemoryAppStore()
