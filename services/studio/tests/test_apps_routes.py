import asyncio

from services.studio.app.dispatch import GENERIC
from services.studio.tests.fakes import user_message, wait_until

USER = {"X-User-Id": "user-9"}


async def test_create_app_without_message(client, services, sandbox):
    r = await client.post("/apps", json={}, headers=USER)
    assert r.status_code == 201
    body = r.json()
    assert body["streamId"] is None
    app_id = body["app"]["id"]
    assert body["app"]["gitRepo"] == "repo-1"

    assert sandbox.repos[0][1].endswith("freestyle-base-nextjs-shadcn")
    assert sandbox.grants == [("identity-1", "repo-1", "write")]
    grant = await services.apps.get_app_user(app_id, "user-9")
    assert grant.permissions == "admin"
    assert grant.access_token == "secret-token"
    assert await services.threads.get_thread(app_id) is not None

    listed = (await client.get("/apps", headers=USER)).json()["apps"]
    assert [a["id"] for a in listed] == [app_id]
    assert (await client.get("/apps", headers={"X-User-Id": "someone-else"})).json()["apps"] == []


async def test_create_app_with_initial_message_starts_building(client, services):
    r = await client.post("/apps", json={"message": "make a platformer"}, headers=USER)
    assert r.status_code == 201
    body = r.json()
    app_id = body["app"]["id"]
    assert body["app"]["name"] == "make a platformer"
    assert body["streamId"]

    async def idle():
        return not await services.lifecycle.is_stream_running(app_id)

    await wait_until(idle)
    messages = (await client.get(f"/apps/{app_id}/messages")).json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["metadata"]["agent"] == "builder"


async def test_create_app_validation(client, sandbox):
    assert (await client.post("/apps", json={})).status_code == 400
    r = await client.post("/apps", json={"templateId": "unity"}, headers=USER)
    assert r.status_code == 400
    assert sandbox.repos == []


async def test_create_app_with_sandbox_down(client, sandbox):
    sandbox.reachable = False
    r = await client.post("/apps", json={"message": "hi"}, headers=USER)
    assert r.status_code == 502
    assert r.json()["error"] == "sandbox_unreachable"


async def test_get_app_includes_stream_state(client, game_app):
    r = await client.get("/apps/app-1")
    assert r.status_code == 200
    assert r.json()["app"]["id"] == "app-1"
    assert r.json()["stream"] is None
    assert (await client.get("/apps/missing")).status_code == 404
    assert (await client.get("/apps/missing/messages")).status_code == 404


async def test_delete_requires_admin(client, services, game_app):
    r = await client.delete("/apps/app-1", headers={"X-User-Id": "intruder"})
    assert r.status_code == 403
    r = await client.delete("/apps/app-1", headers={"X-User-Id": "user-1"})
    assert r.status_code == 200
    assert (await client.get("/apps/app-1")).status_code == 404
    assert await services.threads.get_thread("app-1") is None


async def test_delete_stops_a_stuck_stream(client, services, sandbox, chat_model, game_app):
    chat_model.hang_calls = {0}
    await services.streams.send_message_with_streaming(
        GENERIC, "app-1", "https://mcp.sandbox.test/repo-app-1", sandbox.fs, user_message("hi")
    )
    await asyncio.wait_for(chat_model.started.wait(), timeout=1.0)

    r = await client.delete("/apps/app-1", headers={"X-User-Id": "user-1"})
    assert r.status_code == 200
    assert not await services.lifecycle.is_stream_running("app-1")
