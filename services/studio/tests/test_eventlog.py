import asyncio
import json

import pytest

from services.studio.app.eventlog import Event, InMemoryEventLog


async def _collect(log, stream_id, last_event_id=None, idle_timeout=1.0):
    return [e async for e in log.subscribe(stream_id, last_event_id, idle_timeout=idle_timeout)]


async def test_ids_increase_per_stream():
    log = InMemoryEventLog()
    a1 = await log.append("s-a", "start", {})
    a2 = await log.append("s-a", "text", {"delta": "hi"})
    b1 = await log.append("s-b", "start", {})
    assert (a1.id, a2.id, b1.id) == ("1", "2", "1")


async def test_events_since_skips_seen_events():
    log = InMemoryEventLog()
    for i in range(4):
        await log.append("s", "text", {"delta": str(i)})
    assert [e.data["delta"] for e in await log.events_since("s", "2")] == ["2", "3"]
    assert len(await log.events_since("s", None)) == 4
    # unparseable ids replay everything
    assert len(await log.events_since("s", "not-a-number")) == 4


async def test_events_since_unknown_stream():
    log = InMemoryEventLog()
    with pytest.raises(KeyError):
        await log.events_since("missing", None)


async def test_append_after_terminal_event_is_rejected():
    log = InMemoryEventLog()
    await log.append("s", "finish", {})
    with pytest.raises(RuntimeError):
        await log.append("s", "text", {"delta": "late"})


async def test_subscriber_receives_live_events_until_terminal():
    log = InMemoryEventLog()
    await log.append("s", "start", {})
    consumer = asyncio.create_task(_collect(log, "s"))
    await asyncio.sleep(0.01)
    await log.append("s", "text", {"delta": "a"})
    await log.append("s", "finish", {})
    events = await asyncio.wait_for(consumer, timeout=1.0)
    assert [e.type for e in events] == ["start", "text", "finish"]


async def test_resume_from_last_event_id():
    log = InMemoryEventLog()
    await log.append("s", "start", {})
    await log.append("s", "text", {"delta": "a"})
    await log.append("s", "text", {"delta": "b"})
    await log.append("s", "finish", {})
    events = await _collect(log, "s", last_event_id="2")
    assert [e.id for e in events] == ["3", "4"]


async def test_multiple_consumers_see_the_same_events():
    log = InMemoryEventLog()
    await log.append("s", "start", {})
    consumers = [asyncio.create_task(_collect(log, "s")) for _ in range(3)]
    await asyncio.sleep(0.01)
    for word in ("one", "two"):
        await log.append("s", "text", {"delta": word})
    await log.append("s", "finish", {})
    results = await asyncio.wait_for(asyncio.gather(*consumers), timeout=1.0)
    ids = [[e.id for e in r] for r in results]
    assert ids[0] == ids[1] == ids[2] == ["1", "2", "3", "4"]


async def test_idle_subscriber_gets_heartbeats():
    log = InMemoryEventLog()
    await log.append("s", "start", {})
    gen = log.subscribe("s", idle_timeout=0.02)
    first = await gen.__anext__()
    beat = await asyncio.wait_for(gen.__anext__(), timeout=1.0)
    assert first.type == "start"
    assert beat.type == "heartbeat"
    assert beat.to_sse() == b": keepalive\n\n"
    await gen.aclose()


async def test_subscribe_unknown_stream():
    log = InMemoryEventLog()
    with pytest.raises(KeyError):
        await _collect(log, "missing")


async def test_latest_stream_follows_bind_app():
    log = InMemoryEventLog()
    assert await log.latest_stream("app-1") is None
    await log.bind_app("app-1", "s-1")
    await log.bind_app("app-1", "s-2")
    assert await log.latest_stream("app-1") == "s-2"
    # bound streams are subscribable before their first event
    assert await log.events_since("s-2", None) == []


def test_sse_framing():
    evt = Event(id="7", ts="2024-01-01T00:00:00Z", type="text", data={"delta": "hi"}, stream_id="s")
    raw = evt.to_sse().decode()
    assert raw.endswith("\n\n")
    lines = raw.strip().split("\n")
    assert lines[0] == "id: 7"
    assert lines[1] == "event: text"
    assert json.loads(lines[2][len("data: "):]) == {"delta": "hi"}


async def test_finished_streams_are_evicted_after_ttl():
    log = InMemoryEventLog(finished_ttl=0.05)
    await log.bind_app("app-1", "s-1")
    await log.append("s-1", "start", {})
    await log.append("s-1", "finish", {})
    await log.bind_app("app-2", "s-running")
    await log.append("s-running", "start", {})

    # still readable inside the window
    assert len(await log.events_since("s-1", None)) == 2
    await asyncio.sleep(0.1)
    await log.append("s-other", "start", {})

    with pytest.raises(KeyError):
        await log.events_since("s-1", None)
    assert await log.latest_stream("app-1") is None
    assert await log.latest_stream("app-2") == "s-running"
    assert [e.type for e in await log.events_since("s-running", None)] == ["start"]
