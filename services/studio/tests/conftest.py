import sys, pathlib; sys.path.append(str(pathlib.Path(__file__).resolve().parents[3]))

import httpx
import pytest

from services.studio.app import main
from services.studio.app.agent import GameAgent
from services.studio.app.apps import AppRecord, AppUser, InMemoryAppStore
from services.studio.app.deps import build_services
from services.studio.app.eventlog import InMemoryEventLog
from services.studio.app.lifecycle import StreamLifecycle
from services.studio.app.registry import InMemoryStreamRegistry
from services.studio.app.threads import InMemoryConversationStore
from services.studio.tests.fakes import FAST_LIFECYCLE, FakeSandbox, ScriptedChatModel


@pytest.fixture
def registry():
    return InMemoryStreamRegistry()


@pytest.fixture
def lifecycle(registry):
    return StreamLifecycle(registry, **FAST_LIFECYCLE)


@pytest.fixture
def chat_model():
    return ScriptedChatModel()


@pytest.fixture
def sandbox():
    return FakeSandbox()


@pytest.fixture
async def services(registry, chat_model, sandbox):
    svc = build_services(
        registry=registry,
        event_log=InMemoryEventLog(),
        threads=InMemoryConversationStore(),
        apps=InMemoryAppStore(),
        sandbox=sandbox,
        agent_factory=lambda profile: GameAgent(profile, chat_model, max_steps=5),
        **FAST_LIFECYCLE,
    )
    yield svc
    chat_model.release.set()
    await svc.close()


async def _seed_app(services, app_id: str, user_id: str = "user-1") -> AppRecord:
    app = AppRecord(id=app_id, name="Test game", git_repo=f"repo-{app_id}")
    owner = AppUser(
        app_id=app_id,
        user_id=user_id,
        permissions="admin",
        sandbox_identity="identity-1",
        access_token="secret-token",
        access_token_id="token-1",
    )
    await services.apps.create_app(app, owner)
    await services.threads.create_thread(app_id, resource_id=app_id)
    return app


@pytest.fixture
async def game_app(services):
    return await _seed_app(services, "app-1")


@pytest.fixture
async def other_app(services):
    return await _seed_app(services, "app-2")


@pytest.fixture
async def client(services, monkeypatch):
    monkeypatch.setattr(main, "SERVICES", services)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://studio.test") as c:
        yield c
