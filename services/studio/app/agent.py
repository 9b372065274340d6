from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    message_chunk_to_message,
)
from langchain_core.tools import BaseTool, StructuredTool

from services.studio.app import config
from services.studio.app.dispatch import AgentProfile
from services.studio.app.lifecycle import CancelToken
from services.studio.app.prompts import build_system_message
from services.studio.app.sandbox import DevServerFilesystem, SandboxError

logger = logging.getLogger(__name__)

MAX_TOOL_OUTPUT_CHARS = 20_000


@dataclass
class GenerationEvent:
    type: str                                   # text | tool_call | tool_result
    data: Dict[str, Any] = field(default_factory=dict)


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        out = []
        for block in content:
            if isinstance(block, str):
                out.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                out.append(block.get("text", ""))
        return "".join(out)
    return ""


def to_langchain_messages(history: Sequence[Dict[str, Any]]) -> List[BaseMessage]:
    """Convert stored chat messages ({role, parts}) into langchain messages; non-text parts are dropped."""
    out: List[BaseMessage] = []
    for msg in history:
        parts = msg.get("parts") or []
        text = "\n".join(
            p["text"] for p in parts if p.get("type") == "text" and isinstance(p.get("text"), str)
        ).strip()
        if not text:
            continue
        if msg.get("role") == "assistant":
            out.append(AIMessage(content=text))
        else:
            out.append(HumanMessage(content=text))
    return out


def build_tools(fs: DevServerFilesystem, todos: List[Dict[str, Any]]) -> List[BaseTool]:
    async def read_file(path: str) -> str:
        """Read a file from the game project."""
        content = await fs.read_file(path)
        if len(content) > MAX_TOOL_OUTPUT_CHARS:
            return content[:MAX_TOOL_OUTPUT_CHARS] + "\n... [truncated]"
        return content

    async def write_file(path: str, content: str) -> str:
        """Create or overwrite a file in the game project."""
        await fs.write_file(path, content)
        return f"wrote {len(content)} characters to {path}"

    async def list_directory(path: str = "/") -> str:
        """List the entries of a directory in the game project."""
        return "\n".join(await fs.list_directory(path))

    async def update_todo_list(items: List[str], completed: Optional[List[int]] = None) -> str:
        """Replace the working todo list. `completed` holds indexes of finished items."""
        done = set(completed or [])
        todos[:] = [{"text": t, "done": i in done} for i, t in enumerate(items)]
        return json.dumps(todos)

    return [
        StructuredTool.from_function(coroutine=read_file, name="read_file", description=read_file.__doc__),
        StructuredTool.from_function(coroutine=write_file, name="write_file", description=write_file.__doc__),
        StructuredTool.from_function(
            coroutine=list_directory, name="list_directory", description=list_directory.__doc__
        ),
        StructuredTool.from_function(
            coroutine=update_todo_list, name="update_todo_list", description=update_todo_list.__doc__
        ),
    ]


class GameAgent:
    """
    Tool-calling loop over a langchain chat model. Streams text deltas, runs the
    requested tools against the dev server and feeds results back until the model
    answers without tool calls or max_steps is reached.
    """

    def __init__(self, profile: AgentProfile, model: BaseChatModel, *, max_steps: int = config.AGENT_MAX_STEPS):
        self.profile = profile
        self._model = model
        self._max_steps = max_steps

    async def stream(
        self,
        history: Sequence[Dict[str, Any]],
        fs: DevServerFilesystem,
        token: CancelToken,
    ) -> AsyncIterator[GenerationEvent]:
        todos: List[Dict[str, Any]] = []
        tools = build_tools(fs, todos)
        by_name = {t.name: t for t in tools}
        model = self._model.bind_tools(tools)
        messages: List[BaseMessage] = [SystemMessage(content=build_system_message(self.profile))]
        messages.extend(to_langchain_messages(history))

        for _ in range(self._max_steps):
            token.raise_if_cancelled()
            gathered = None
            async for chunk in model.astream(messages):
                token.raise_if_cancelled()
                gathered = chunk if gathered is None else gathered + chunk
                text = _chunk_text(chunk.content)
                if text:
                    yield GenerationEvent("text", {"delta": text})
            if gathered is None:
                return
            reply = message_chunk_to_message(gathered)
            messages.append(reply)
            tool_calls = getattr(reply, "tool_calls", None) or []
            if not tool_calls:
                return
            for call in tool_calls:
                token.raise_if_cancelled()
                yield GenerationEvent("tool_call", {"id": call.get("id"), "name": call["name"], "args": call.get("args", {})})
                result, ok = await self._run_tool(by_name, call)
                messages.append(ToolMessage(content=result, tool_call_id=call.get("id") or "", name=call["name"]))
                yield GenerationEvent(
                    "tool_result",
                    {"id": call.get("id"), "name": call["name"], "ok": ok, "output": result[:2000]},
                )
        logger.warning(f"agent {self.profile.name} stopped after {self._max_steps} steps")

    async def _run_tool(self, by_name: Dict[str, BaseTool], call: Dict[str, Any]) -> tuple[str, bool]:
        tool = by_name.get(call["name"])
        if tool is None:
            return f"Unknown tool {call['name']}", False
        try:
            result = await tool.ainvoke(call.get("args") or {})
        except SandboxError as e:
            logger.warning(f"tool {call['name']} failed: {e}")
            return f"Error: {e}", False
        except (ValueError, TypeError) as e:
            # bad arguments from the model
            return f"Error: invalid arguments for {call['name']}: {e}", False
        return str(result), True


AgentFactory = Callable[[AgentProfile], GameAgent]


def build_chat_model(model_name: str = config.STUDIO_MODEL) -> BaseChatModel:
    return init_chat_model(model_name, streaming=True)


def default_agent_factory(model_name: str = config.STUDIO_MODEL, max_steps: int = config.AGENT_MAX_STEPS) -> AgentFactory:
    model: Optional[BaseChatModel] = None

    def factory(profile: AgentProfile) -> GameAgent:
        nonlocal model
        if model is None:
            model = build_chat_model(model_name)
        return GameAgent(profile, model, max_steps=max_steps)

    return factory
