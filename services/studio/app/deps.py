import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from redis.asyncio import Redis

from services.studio.app import config
from services.studio.app.agent import AgentFactory, default_agent_factory
from services.studio.app.apps import AppStore, get_app_store_from_env
from services.studio.app.eventlog import EventLog, get_event_log_from_env
from services.studio.app.lifecycle import StreamLifecycle
from services.studio.app.registry import StreamRegistry, get_registry_from_env
from services.studio.app.sandbox import SandboxClient
from services.studio.app.streaming import StreamManager
from services.studio.app.threads import ConversationStore, get_conversation_store_from_env

logger = logging.getLogger(__name__)


@dataclass
class StudioServices:
    registry: StreamRegistry
    event_log: EventLog
    threads: ConversationStore
    apps: AppStore
    lifecycle: StreamLifecycle
    streams: StreamManager
    sandbox: SandboxClient
    redis: Optional[Redis] = None

    async def close(self) -> None:
        await self.streams.shutdown()
        for store in (self.registry, self.event_log, self.threads, self.apps):
            await store.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_services(
    *,
    registry: StreamRegistry,
    event_log: EventLog,
    threads: ConversationStore,
    apps: AppStore,
    sandbox: SandboxClient,
    agent_factory: AgentFactory,
    redis: Optional[Redis] = None,
    **lifecycle_options,
) -> StudioServices:
    lifecycle = StreamLifecycle(registry, **lifecycle_options)
    streams = StreamManager(lifecycle, event_log, threads, agent_factory)
    return StudioServices(
        registry=registry,
        event_log=event_log,
        threads=threads,
        apps=apps,
        lifecycle=lifecycle,
        streams=streams,
        sandbox=sandbox,
        redis=redis,
    )


def build_services_from_env(http_client: httpx.AsyncClient) -> StudioServices:
    redis: Optional[Redis] = None
    if config.STUDIO_STORE == "redis":
        # One pool shared by every store
        redis = Redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=50,
            # XREAD blocks up to the keepalive interval
            socket_timeout=config.SSE_KEEPALIVE_SECONDS + 5.0,
            socket_connect_timeout=5.0,
        )
    logger.info(f"studio store backend: {config.STUDIO_STORE} (instance {config.INSTANCE_ID})")
    return build_services(
        registry=get_registry_from_env(redis),
        event_log=get_event_log_from_env(redis),
        threads=get_conversation_store_from_env(redis),
        apps=get_app_store_from_env(redis),
        sandbox=SandboxClient(http_client, config.SANDBOX_API_URL, config.SANDBOX_API_KEY),
        agent_factory=default_agent_factory(config.STUDIO_MODEL, config.AGENT_MAX_STEPS),
        redis=redis,
    )
