import sys, pathlib; sys.path.append(str(pathlib.Path(__file__).resolve().parents[3]))
from fastapi.testclient import TestClient
from services.studio.app.main import app

# No context manager: lifespan does not run and no stores are built
client = TestClient(app, base_url="http://localhost")


def test_healthz():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_ready_without_services():
    resp = client.get("/ready")
    assert resp.status_code == 503


def test_request_id_is_echoed():
    resp = client.get("/healthz", headers={"X-Request-Id": "req-42"})
    assert resp.headers["X-Request-Id"] == "req-42"
    assert client.get("/healthz").headers.get("X-Request-Id")


def test_list_agents():
    resp = client.get("/api/v1/agents")
    assert resp.status_code == 200
    data = resp.json()
    names = [a["name"] for a in data["agents"]]
    assert names[0] == "builder"
    assert "tower-defense" in names
    assert data["rules"][0]["order"] == 1


def test_select_agent_preview():
    resp = client.post("/api/v1/agents/select", json={"text": "Tower defense with dragons"})
    assert resp.json()["agent"]["name"] == "tower-defense"
    resp = client.post("/api/v1/agents/select", json={"text": ""})
    assert resp.json()["agent"]["name"] == "builder"


def test_cors_preflight_for_frontend():
    resp = client.options(
        "/chat",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-App-Id",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
