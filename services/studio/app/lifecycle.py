from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from services.studio.app import config
from services.studio.app.registry import StreamRecord, StreamRegistry, StreamState

logger = logging.getLogger(__name__)


class StreamAlreadyRunningError(RuntimeError):
    def __init__(self, app_id: str):
        super().__init__(f"a stream is already running for app {app_id}")
        self.app_id = app_id


class StreamCancelledError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CancelToken:
    """
    Cooperative cancellation signal checked by the generation task between
    tokens and tool calls. Cancelling never interrupts an in-flight await.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self.superseded = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def supersede(self) -> None:
        # Another session owns the app now (forced clear or lease loss)
        self.superseded = True
        self.cancel("superseded")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamSession:
    app_id: str
    session_id: str
    started_at: str
    token: CancelToken = field(default_factory=CancelToken)
    watcher: Optional[asyncio.Task] = None

    @property
    def superseded(self) -> bool:
        return self.token.superseded


class StreamLifecycle:
    """
    Per-app single-flight controller over a shared StreamRegistry.

    States: no record (idle) -> running -> stopping -> no record, with a forced
    clear from any state. Only begin_session() creates a record; only the owning
    session's end_session() or clear_stream_state() removes it.
    """

    def __init__(
        self,
        registry: StreamRegistry,
        *,
        instance_id: str = config.INSTANCE_ID,
        lease_ttl: float = config.STREAM_LEASE_TTL,
        heartbeat_interval: float = config.STREAM_HEARTBEAT_INTERVAL,
        poll_interval: float = config.STREAM_POLL_INTERVAL,
        stop_timeout: float = config.STOP_WAIT_TIMEOUT,
        initial_delay: float = config.STOP_WAIT_INITIAL_DELAY,
        max_delay: float = config.STOP_WAIT_MAX_DELAY,
        backoff: float = config.STOP_WAIT_BACKOFF,
    ) -> None:
        if heartbeat_interval >= lease_ttl:
            raise ValueError("heartbeat_interval must be shorter than lease_ttl")
        self._registry = registry
        self._instance_id = instance_id
        self._lease_ttl = lease_ttl
        self._heartbeat_interval = heartbeat_interval
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._backoff = backoff
        # Sessions whose generation task lives in this process
        self._local: Dict[str, StreamSession] = {}

    @property
    def registry(self) -> StreamRegistry:
        return self._registry

    async def get_record(self, app_id: str) -> Optional[StreamRecord]:
        return await self._registry.get(app_id)

    async def list_records(self) -> List[StreamRecord]:
        return await self._registry.list_active()

    async def is_stream_running(self, app_id: str) -> bool:
        return await self._registry.get(app_id) is not None

    async def stop_stream(self, app_id: str) -> None:
        """Ask the running stream for app_id to stop. Safe to call repeatedly or with nothing running."""
        rec = await self._registry.request_stop(app_id)
        local = self._local.get(app_id)
        if local is not None:
            local.token.cancel("stop_requested")
        if rec is None:
            logger.debug(f"stop requested for app {app_id} but no stream is running")
        else:
            logger.info(f"stop requested for app {app_id} session {rec.session_id}")

    async def wait_for_stream_to_stop(self, app_id: str, timeout: Optional[float] = None) -> bool:
        """
        Poll the registry until app_id has no stream record.

        Delays grow from initial_delay by the backoff factor up to max_delay and the
        total wait never exceeds the timeout. Returns False when the budget runs out.
        """
        budget = self._stop_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        delay = self._initial_delay
        attempts = 0
        while True:
            attempts += 1
            if not await self.is_stream_running(app_id):
                logger.info(f"stream for app {app_id} stopped after {attempts} checks")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"stream for app {app_id} still running after {budget:.2f}s ({attempts} checks)")
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * self._backoff, self._max_delay)

    async def clear_stream_state(self, app_id: str) -> None:
        """Forcefully remove the record for app_id whether or not its task acknowledged a stop."""
        await self._registry.clear(app_id)
        local = self._local.get(app_id)
        if local is not None:
            local.token.supersede()
        logger.warning(f"stream state for app {app_id} force-cleared")

    async def begin_session(self, app_id: str) -> StreamSession:
        session_id = uuid.uuid4().hex
        acquired = await self._registry.acquire(
            app_id, session_id, self._lease_ttl, instance_id=self._instance_id
        )
        if not acquired:
            raise StreamAlreadyRunningError(app_id)
        session = StreamSession(
            app_id=app_id,
            session_id=session_id,
            started_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._local[app_id] = session
        session.watcher = asyncio.create_task(self._watch(session), name=f"stream-watch-{app_id}")
        logger.info(f"stream session {session_id} started for app {app_id}")
        return session

    async def end_session(self, session: StreamSession) -> None:
        if session.watcher is not None:
            session.watcher.cancel()
            await asyncio.gather(session.watcher, return_exceptions=True)
            session.watcher = None
        if self._local.get(session.app_id) is session:
            self._local.pop(session.app_id, None)
        try:
            released = await self._registry.release(session.app_id, session.session_id)
        except Exception:
            # The lease TTL frees the app if the release never lands
            logger.exception(f"failed to release stream session {session.session_id} for app {session.app_id}")
            return
        if released:
            logger.info(f"stream session {session.session_id} for app {session.app_id} ended")
        else:
            logger.info(f"stream session {session.session_id} for app {session.app_id} ended after being superseded")

    async def _watch(self, session: StreamSession) -> None:
        loop = asyncio.get_running_loop()
        next_beat = loop.time() + self._heartbeat_interval
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                rec = await self._registry.get(session.app_id)
                if rec is None or rec.session_id != session.session_id:
                    logger.warning(f"stream session {session.session_id} for app {session.app_id} lost ownership")
                    session.token.supersede()
                    return
                if rec.state == StreamState.STOPPING.value:
                    session.token.cancel("stop_requested")
                if loop.time() >= next_beat:
                    if not await self._registry.refresh(session.app_id, session.session_id, self._lease_ttl):
                        session.token.supersede()
                        return
                    next_beat = loop.time() + self._heartbeat_interval
            except Exception as e:
                logger.warning(f"stream watcher for app {session.app_id} could not reach registry: {e}")
