import json

from typer.testing import CliRunner

from cli.studioctl import main as cli_main
from cli.studioctl import streams_commands

runner = CliRunner()


class _Resp:
    def __init__(self, status_code=200, payload=None, lines=()):
        self.status_code = status_code
        self._payload = payload or {}
        self._lines = list(lines)
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload

    def iter_lines(self, decode_unicode=False):
        return iter(self._lines)


def test_agent_for(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json))
        return _Resp(payload={"agent": {"name": "platformer", "game_type": "platformer", "focus_mechanics": ["movementSystems"]}})

    monkeypatch.setattr(cli_main.requests, "post", fake_post)
    result = runner.invoke(cli_main.app, ["agent-for", "a jumping game", "--url", "http://studio"])
    assert result.exit_code == 0
    assert "platformer" in result.output
    assert calls == [("http://studio/api/v1/agents/select", {"text": "a jumping game"})]


def test_streams_list_json(monkeypatch):
    records = [{"appId": "app-1", "state": "running", "sessionId": "abc"}]
    monkeypatch.setattr(streams_commands.requests, "get", lambda url, timeout=None: _Resp(payload={"streams": records}))
    result = runner.invoke(cli_main.app, ["streams", "list", "-o", "json"])
    assert result.exit_code == 0
    assert json.loads(result.output) == records


def test_streams_stop_not_stopped_exits_2(monkeypatch):
    seen = {}

    def fake_post(url, params=None, timeout=None):
        seen["url"], seen["params"] = url, params
        return _Resp(payload={"appId": "app-1", "stopped": False})

    monkeypatch.setattr(streams_commands.requests, "post", fake_post)
    result = runner.invoke(cli_main.app, ["streams", "stop", "app-1", "--timeout", "2", "--url", "http://studio"])
    assert result.exit_code == 2
    assert seen["url"] == "http://studio/api/v1/streams/app-1/stop"
    assert seen["params"] == {"wait": "true", "timeout": 2.0}


def test_streams_clear_requires_confirmation(monkeypatch):
    deleted = []
    monkeypatch.setattr(
        streams_commands.requests, "delete", lambda url, timeout=None: deleted.append(url) or _Resp(payload={"cleared": True})
    )
    result = runner.invoke(cli_main.app, ["streams", "clear", "app-1"], input="n\n")
    assert "Cancelled" in result.output
    assert deleted == []

    result = runner.invoke(cli_main.app, ["streams", "clear", "app-1", "--force"])
    assert result.exit_code == 0
    assert len(deleted) == 1


def test_streams_watch_prints_events(monkeypatch):
    lines = [
        "id: 1", "event: start", 'data: {"sessionId":"s1","agent":"builder"}', "",
        "id: 2", "event: text", 'data: {"delta":"hello"}', "",
        ": keepalive", "",
        "id: 3", "event: finish", 'data: {"reason":"stop"}', "",
    ]
    seen = {}

    def fake_get(url, stream=False, timeout=None, headers=None):
        seen["headers"] = headers
        return _Resp(lines=lines)

    monkeypatch.setattr(streams_commands.requests, "get", fake_get)
    result = runner.invoke(cli_main.app, ["streams", "watch", "app-1", "--from", "4"])
    assert result.exit_code == 0
    assert "hello" in result.output
    assert "Received 3 events" in result.output
    assert seen["headers"]["X-App-Id"] == "app-1"
    assert seen["headers"]["Last-Event-ID"] == "4"
