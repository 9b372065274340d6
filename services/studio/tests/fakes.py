"""Test doubles for the sandbox and the chat model."""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from langchain_core.messages import AIMessageChunk
from langchain_core.messages.tool import tool_call_chunk

from services.studio.app.sandbox import DevServer, SandboxError, SandboxUnavailableError

# Fast timings so stop/wait scenarios finish in about a second
FAST_LIFECYCLE = dict(
    instance_id="test-instance",
    lease_ttl=5.0,
    heartbeat_interval=1.0,
    poll_interval=0.01,
    stop_timeout=1.0,
    initial_delay=0.01,
    max_delay=0.05,
    backoff=2.0,
)


class FakeFilesystem:
    def __init__(self, files: Optional[Dict[str, str]] = None, reachable: bool = True):
        self.files = dict(files or {})
        self.reachable = reachable
        self.pings = 0

    async def ping(self) -> None:
        self.pings += 1
        if not self.reachable:
            raise SandboxUnavailableError("sandbox_unreachable: connection refused")

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise SandboxError(f"{path} not found", 404)
        return self.files[path]

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def list_directory(self, path: str = "/") -> List[str]:
        return sorted(self.files)


class FakeSandbox:
    def __init__(self) -> None:
        self.reachable = True
        self.fs = FakeFilesystem()
        self.repos: List[Tuple[str, Optional[str]]] = []
        self.grants: List[Tuple[str, str, str]] = []
        self.dev_server_requests = 0

    def _check(self) -> None:
        if not self.reachable:
            raise SandboxUnavailableError("sandbox_unreachable: connection refused")

    async def request_dev_server(self, repo_id: str) -> DevServer:
        self.dev_server_requests += 1
        self._check()
        return DevServer(
            repo_id=repo_id,
            endpoint=f"https://mcp.sandbox.test/{repo_id}",
            preview_url=f"https://{repo_id}.preview.test",
            fs=self.fs,
        )

    async def create_git_repository(self, name: str, source_url: Optional[str] = None) -> str:
        self._check()
        self.repos.append((name, source_url))
        return f"repo-{len(self.repos)}"

    async def create_identity(self) -> str:
        self._check()
        return "identity-1"

    async def grant_git_permission(self, identity_id: str, repo_id: str, permission: str) -> None:
        self.grants.append((identity_id, repo_id, permission))

    async def create_git_access_token(self, identity_id: str) -> Dict[str, str]:
        return {"id": "token-1", "token": "secret-token"}


@dataclass
class Reply:
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    fail_after: Optional[int] = None     # raise after this many chunks


class ScriptedChatModel:
    """
    Stands in for a langchain chat model. Each astream() call replays the next
    scripted Reply word by word as AIMessageChunks, then any tool calls.
    Calls listed in hang_calls block until release is set and never look at
    cancellation, like a provider call that does not return.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, *, delay: float = 0.0, hang_calls: Set[int] = frozenset()):
        self.replies = list(replies or [Reply("Your space shooter is ready")])
        self.delay = delay
        self.hang_calls = set(hang_calls)
        self.calls: List[List[Any]] = []
        self.tools: List[Any] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    def bind_tools(self, tools):
        self.tools = list(tools)
        return self

    async def astream(self, messages):
        index = len(self.calls)
        self.calls.append(list(messages))
        self.started.set()
        if index in self.hang_calls:
            await self.release.wait()
        reply = self.replies[min(index, len(self.replies) - 1)]
        words = reply.text.split(" ") if reply.text else []
        for i, word in enumerate(words):
            if reply.fail_after is not None and i >= reply.fail_after:
                raise RuntimeError("model provider failed")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield AIMessageChunk(content=word if i == 0 else " " + word)
        if reply.tool_calls:
            yield AIMessageChunk(
                content="",
                tool_call_chunks=[
                    tool_call_chunk(name=c["name"], args=json.dumps(c.get("args", {})), id=c["id"], index=i)
                    for i, c in enumerate(reply.tool_calls)
                ],
            )


def parse_sse(body: str) -> List[Tuple[str, str, Dict[str, Any]]]:
    """Split an SSE body into (id, event, data) triples; comments are skipped."""
    out = []
    for frame in body.split("\n\n"):
        event_id, event_type, data = "", "message", None
        for line in frame.splitlines():
            if line.startswith("id: "):
                event_id = line[4:]
            elif line.startswith("event: "):
                event_type = line[7:]
            elif line.startswith("data: "):
                data = json.loads(line[6:])
        if data is not None:
            out.append((event_id, event_type, data))
    return out


def text_of(events: List[Tuple[str, str, Dict[str, Any]]]) -> str:
    return "".join(d.get("delta", "") for _, t, d in events if t == "text")


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def user_message(text: str, message_id: str = "m1") -> Dict[str, Any]:
    return {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text}]}
