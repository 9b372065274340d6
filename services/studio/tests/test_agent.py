import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from services.studio.app.agent import GameAgent, to_langchain_messages
from services.studio.app.dispatch import GENERIC, SPACE_SHOOTER
from services.studio.app.lifecycle import CancelToken, StreamCancelledError
from services.studio.tests.fakes import FakeFilesystem, Reply, ScriptedChatModel, user_message


async def _run(agent, history, fs, token=None):
    return [e async for e in agent.stream(history, fs, token or CancelToken())]


async def test_streams_text_and_runs_tool_calls():
    model = ScriptedChatModel([
        Reply(
            "Creating the scene",
            tool_calls=[{"id": "c1", "name": "write_file", "args": {"path": "src/game.ts", "content": "new Phaser.Game()"}}],
        ),
        Reply("Done"),
    ])
    fs = FakeFilesystem()
    events = await _run(GameAgent(SPACE_SHOOTER, model), [user_message("make a space game")], fs)

    assert [e.type for e in events] == ["text", "text", "text", "tool_call", "tool_result", "text"]
    assert "".join(e.data["delta"] for e in events if e.type == "text") == "Creating the sceneDone"
    call, result = events[3], events[4]
    assert call.data["name"] == "write_file"
    assert result.data["ok"] is True
    assert fs.files["src/game.ts"] == "new Phaser.Game()"

    second_prompt = model.calls[1]
    assert isinstance(second_prompt[-1], ToolMessage)
    assert second_prompt[-1].tool_call_id == "c1"


async def test_system_prompt_comes_from_profile():
    model = ScriptedChatModel([Reply("ok")])
    await _run(GameAgent(SPACE_SHOOTER, model), [user_message("hi")], FakeFilesystem())
    system, human = model.calls[0]
    assert isinstance(system, SystemMessage)
    assert "projectileSystems" in system.content
    assert isinstance(human, HumanMessage)
    assert [t.name for t in model.tools] == ["read_file", "write_file", "list_directory", "update_todo_list"]


async def test_tool_failures_are_reported_to_the_model():
    model = ScriptedChatModel([
        Reply(tool_calls=[
            {"id": "c1", "name": "read_file", "args": {"path": "missing.ts"}},
            {"id": "c2", "name": "delete_everything", "args": {}},
        ]),
        Reply("Sorry"),
    ])
    events = await _run(GameAgent(GENERIC, model), [user_message("fix it")], FakeFilesystem())
    results = [e.data for e in events if e.type == "tool_result"]
    assert [r["ok"] for r in results] == [False, False]
    assert results[0]["output"].startswith("Error:")
    assert "Unknown tool" in results[1]["output"]


async def test_todo_list_tool():
    model = ScriptedChatModel([
        Reply(tool_calls=[{"id": "c1", "name": "update_todo_list", "args": {"items": ["player", "enemies"], "completed": [0]}}]),
        Reply("Planned"),
    ])
    events = await _run(GameAgent(GENERIC, model), [user_message("plan")], FakeFilesystem())
    result = next(e for e in events if e.type == "tool_result")
    assert json.loads(result.data["output"]) == [
        {"text": "player", "done": True},
        {"text": "enemies", "done": False},
    ]


async def test_step_limit_stops_tool_loop():
    model = ScriptedChatModel([Reply(tool_calls=[{"id": "c1", "name": "list_directory", "args": {}}])])
    agent = GameAgent(GENERIC, model, max_steps=2)
    events = await _run(agent, [user_message("loop")], FakeFilesystem({"a.ts": ""}))
    assert len(model.calls) == 2
    assert [e.type for e in events].count("tool_call") == 2


async def test_cancellation_between_tokens():
    model = ScriptedChatModel([Reply("one two three four")])
    token = CancelToken()
    seen = []
    with pytest.raises(StreamCancelledError) as exc_info:
        async for evt in GameAgent(GENERIC, model).stream([user_message("go")], FakeFilesystem(), token):
            seen.append(evt)
            token.cancel("stop_requested")
    assert exc_info.value.reason == "stop_requested"
    assert len(seen) == 1


def test_history_conversion_keeps_roles_and_drops_empty_messages():
    history = [
        user_message("make a game"),
        {"id": "a1", "role": "assistant", "parts": [{"type": "text", "text": "Sure"}]},
        {"id": "m2", "role": "user", "parts": [{"type": "file", "url": "https://example.test/x.png"}]},
    ]
    out = to_langchain_messages(history)
    assert len(out) == 2
    assert isinstance(out[0], HumanMessage) and out[0].content == "make a game"
    assert isinstance(out[1], AIMessage) and out[1].content == "Sure"


def test_history_conversion_skips_non_string_text():
    history = [
        {"id": "m1", "role": "user", "parts": [{"type": "text", "text": 42}]},
        {"id": "m2", "role": "user", "parts": [{"type": "text", "text": ["x"]}, {"type": "text", "text": "hello"}]},
    ]
    out = to_langchain_messages(history)
    assert [m.content for m in out] == ["hello"]
