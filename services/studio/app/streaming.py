from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from fastapi.responses import StreamingResponse

from services.studio.app import config
from services.studio.app.agent import AgentFactory
from services.studio.app.dispatch import AgentProfile
from services.studio.app.eventlog import EventLog
from services.studio.app.lifecycle import StreamCancelledError, StreamLifecycle, StreamSession
from services.studio.app.sandbox import DevServerFilesystem, SandboxUnavailableError
from services.studio.app.telemetry import span
from services.studio.app.threads import ConversationStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ResumableStream:
    """
    Read side of one generation session. Every call to events()/response() is an
    independent consumer that replays the log from the start (or after
    last_event_id) and then follows it until the terminal event.
    """

    def __init__(
        self,
        event_log: EventLog,
        stream_id: str,
        app_id: str,
        *,
        keepalive: float = config.SSE_KEEPALIVE_SECONDS,
    ):
        self._event_log = event_log
        self.stream_id = stream_id
        self.app_id = app_id
        self._keepalive = keepalive

    async def events(self, last_event_id: Optional[str] = None) -> AsyncIterator[bytes]:
        # A disconnecting client cancels only this reader, never the generation task
        async for evt in self._event_log.subscribe(self.stream_id, last_event_id, idle_timeout=self._keepalive):
            yield evt.to_sse()

    def response(self, last_event_id: Optional[str] = None) -> StreamingResponse:
        headers = dict(SSE_HEADERS)
        headers["X-Stream-Id"] = self.stream_id
        return StreamingResponse(
            self.events(last_event_id),
            media_type="text/event-stream; charset=utf-8",
            headers=headers,
        )


class StreamManager:
    """
    Starts generation sessions and owns their background tasks. The task writes
    into the event log; HTTP responses only read from it, so a dropped client
    never stops generation and a reconnecting one can resume.
    """

    def __init__(
        self,
        lifecycle: StreamLifecycle,
        event_log: EventLog,
        threads: ConversationStore,
        agent_factory: AgentFactory,
        *,
        history_limit: int = config.THREAD_HISTORY_LIMIT,
        keepalive: float = config.SSE_KEEPALIVE_SECONDS,
    ):
        self.lifecycle = lifecycle
        self.event_log = event_log
        self.threads = threads
        self._agent_factory = agent_factory
        self._history_limit = history_limit
        self._keepalive = keepalive
        self._tasks: Set[asyncio.Task] = set()

    def _stream(self, stream_id: str, app_id: str) -> ResumableStream:
        return ResumableStream(self.event_log, stream_id, app_id, keepalive=self._keepalive)

    async def send_message_with_streaming(
        self,
        profile: AgentProfile,
        app_id: str,
        sandbox_endpoint: str,
        fs: DevServerFilesystem,
        new_message: Dict[str, Any],
    ) -> ResumableStream:
        """
        Record new_message in the app's thread and start a generation session for it.

        Raises SandboxUnavailableError before any session exists when the dev server
        cannot be reached, and StreamAlreadyRunningError when another session holds
        the app.
        """
        if not sandbox_endpoint:
            raise SandboxUnavailableError("dev server endpoint missing")
        with span("studio.sandbox.ping", {"studio.app_id": app_id}):
            await fs.ping()

        session = await self.lifecycle.begin_session(app_id)
        try:
            await self.threads.append_message(app_id, new_message)
            await self.event_log.bind_app(app_id, session.session_id)
            await self.event_log.append(
                session.session_id,
                "start",
                {"appId": app_id, "sessionId": session.session_id, "agent": profile.name},
            )
        except BaseException:
            await self.lifecycle.end_session(session)
            raise

        task = asyncio.create_task(
            self._produce(session, profile, fs),
            name=f"stream-{app_id}-{session.session_id[:8]}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"agent {profile.name} streaming for app {app_id} (session {session.session_id})")
        return self._stream(session.session_id, app_id)

    async def resume(self, app_id: str) -> Optional[ResumableStream]:
        stream_id = await self.event_log.latest_stream(app_id)
        if not stream_id:
            return None
        return self._stream(stream_id, app_id)

    async def _produce(self, session: StreamSession, profile: AgentProfile, fs: DevServerFilesystem) -> None:
        app_id, stream_id, token = session.app_id, session.session_id, session.token
        text_parts: List[str] = []
        terminal: Tuple[str, Dict[str, Any]] = ("error", {"message": "generation did not complete"})
        try:
            agent = self._agent_factory(profile)
            history = await self.threads.list_messages(app_id, limit=self._history_limit)
            async for gen in agent.stream(history, fs, token):
                if gen.type == "text":
                    text_parts.append(gen.data.get("delta", ""))
                await self.event_log.append(stream_id, gen.type, gen.data)
            terminal = ("finish", {"reason": "stop"})
        except StreamCancelledError as e:
            logger.info(f"session {stream_id} for app {app_id} cancelled: {e.reason}")
            terminal = ("cancelled", {"reason": e.reason})
        except asyncio.CancelledError:
            terminal = ("cancelled", {"reason": "shutdown"})
            raise
        except Exception as e:
            logger.exception(f"session {stream_id} for app {app_id} failed")
            terminal = ("error", {"message": str(e)})
        finally:
            try:
                await self._finalize(session, profile, text_parts, terminal)
            finally:
                await self.lifecycle.end_session(session)

    async def _finalize(
        self,
        session: StreamSession,
        profile: AgentProfile,
        text_parts: List[str],
        terminal: Tuple[str, Dict[str, Any]],
    ) -> None:
        kind, data = terminal
        text = "".join(text_parts)
        try:
            # A superseded session no longer owns the thread
            if text and not session.superseded:
                await self.threads.append_message(
                    session.app_id,
                    {
                        "id": str(uuid.uuid4()),
                        "role": "assistant",
                        "parts": [{"type": "text", "text": text}],
                        "createdAt": _utc_iso(),
                        "metadata": {"agent": profile.name, "status": kind},
                    },
                )
            await self.event_log.append(session.session_id, kind, {**data, "sessionId": session.session_id})
        except Exception:
            logger.exception(f"failed to finalize session {session.session_id} for app {session.app_id}")

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
