from typing import Any, Dict, List, Optional

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from services.studio.app import config
from services.studio.app.context import RequestContextMiddleware, configure_logging
from services.studio.app.deps import StudioServices, build_services_from_env
from services.studio.app.dispatch import all_profiles, latest_user_text, rule_catalog, select_agent
from services.studio.app.lifecycle import StreamAlreadyRunningError
from services.studio.app.models import (
    AgentSelectRequest,
    ChatRequest,
    CreateAppRequest,
    StopStreamResponse,
    StreamStatusResponse,
)
from services.studio.app.provisioning import provision_app
from services.studio.app.sandbox import SandboxError, SandboxUnavailableError
from services.studio.app.telemetry import span, start_telemetry, stop_telemetry

logger = logging.getLogger(__name__)

# Global service container; tests may install their own before startup
SERVICES: Optional[StudioServices] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI app startup and shutdown"""
    global SERVICES

    configure_logging(config.LOG_LEVEL)
    start_telemetry(app)

    http_client: Optional[httpx.AsyncClient] = None
    owns_services = SERVICES is None
    if owns_services:
        # Connection pool for the sandbox API
        timeout = httpx.Timeout(connect=5.0, read=config.SANDBOX_TIMEOUT, write=30.0, pool=30.0)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=100, keepalive_expiry=60.0)
        http_client = httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=False)
        SERVICES = build_services_from_env(http_client)

    yield

    # Shutdown
    if owns_services and SERVICES is not None:
        await SERVICES.close()
        SERVICES = None
    if http_client is not None:
        await http_client.aclose()
    stop_telemetry()


app = FastAPI(
    title="Studio Service",
    description="Chat-driven game builder: single-flight agent streams per app.",
    version="0.1.0",
    lifespan=lifespan,
)


def _ensure_services() -> StudioServices:
    if SERVICES is None:
        raise RuntimeError("Studio services not initialized")
    return SERVICES


# Add CORS middleware configuration
origins = [
    "http://localhost:3000",  # Next.js dev server
    "http://127.0.0.1:3000",
]
if config.FRONTEND_URL:
    origins.append(config.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)
app.add_middleware(
    RequestContextMiddleware,
    header_name=config.REQUEST_ID_HEADER,
    app_id_header=config.APP_ID_HEADER,
)


def _sandbox_failure(exc: SandboxError) -> JSONResponse:
    error = "sandbox_unreachable" if isinstance(exc, SandboxUnavailableError) else "sandbox_error"
    logger.warning(f"{error}: {exc}")
    return JSONResponse(status_code=502, content={"error": error, "detail": str(exc)})


async def _supersede_stream(services: StudioServices, app_id: str) -> None:
    """Stop the app's running stream and wait for it to go away, or answer 429."""
    with span("studio.stream.supersede", {"studio.app_id": app_id}):
        await services.lifecycle.stop_stream(app_id)
        stopped = await services.lifecycle.wait_for_stream_to_stop(app_id)
    if stopped:
        return
    if config.CLEAR_ON_STOP_TIMEOUT:
        await services.lifecycle.clear_stream_state(app_id)
    raise HTTPException(status_code=429, detail="Previous stream is still shutting down, please try again")


@app.post("/chat")
async def chat(request: Request, body: ChatRequest):
    """
    Send the latest message of a conversation to the app's game builder agent and
    stream the reply as SSE. A stream already running for the app is stopped first.
    """
    services = _ensure_services()
    app_id = request.headers.get(config.APP_ID_HEADER)
    if not app_id:
        raise HTTPException(status_code=400, detail="Missing App Id header")
    game_app = await services.apps.get_app(app_id)
    if game_app is None:
        raise HTTPException(status_code=404, detail="App not found")
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")

    with span("studio.chat", {"studio.app_id": app_id}) as chat_span:
        if await services.lifecycle.is_stream_running(app_id):
            await _supersede_stream(services, app_id)

        messages = [m.model_dump() for m in body.messages]
        profile = select_agent(latest_user_text(messages))
        if chat_span is not None:
            chat_span.set_attribute("studio.agent", profile.name)

        try:
            with span("studio.sandbox.dev_server", {"studio.repo": game_app.git_repo}):
                dev_server = await services.sandbox.request_dev_server(game_app.git_repo)
            try:
                stream = await services.streams.send_message_with_streaming(
                    profile, app_id, dev_server.endpoint, dev_server.fs, messages[-1]
                )
            except StreamAlreadyRunningError:
                # Another request started a stream between our check and our acquire
                await _supersede_stream(services, app_id)
                try:
                    stream = await services.streams.send_message_with_streaming(
                        profile, app_id, dev_server.endpoint, dev_server.fs, messages[-1]
                    )
                except StreamAlreadyRunningError:
                    raise HTTPException(
                        status_code=429, detail="Previous stream is still shutting down, please try again"
                    )
        except SandboxError as e:
            return _sandbox_failure(e)

    return stream.response()


@app.get("/chat/stream")
async def resume_chat_stream(request: Request):
    """Re-attach to the app's latest stream; honours Last-Event-ID."""
    services = _ensure_services()
    app_id = request.headers.get(config.APP_ID_HEADER)
    if not app_id:
        raise HTTPException(status_code=400, detail="Missing App Id header")
    if await services.apps.get_app(app_id) is None:
        raise HTTPException(status_code=404, detail="App not found")
    stream = await services.streams.resume(app_id)
    if stream is None:
        raise HTTPException(status_code=404, detail="No stream for app")
    last_event_id = request.headers.get("last-event-id")
    return stream.response(last_event_id)


# ---------- stream administration ----------

@app.get("/api/v1/streams")
async def list_streams():
    services = _ensure_services()
    records = await services.lifecycle.list_records()
    return {"streams": [r.to_public() for r in records]}


@app.get("/api/v1/store/info")
async def stream_store_info():
    services = _ensure_services()
    return {
        "registry": await services.registry.adapter_info(),
        "eventLog": await services.event_log.adapter_info(),
        "instanceId": config.INSTANCE_ID,
    }


@app.get("/api/v1/streams/{app_id}", response_model=StreamStatusResponse)
async def stream_status(app_id: str):
    services = _ensure_services()
    rec = await services.lifecycle.get_record(app_id)
    if rec is None:
        return StreamStatusResponse(appId=app_id, running=False)
    return StreamStatusResponse(
        appId=app_id,
        running=True,
        state=rec.state,
        sessionId=rec.session_id,
        startedAt=rec.started_at,
        updatedAt=rec.updated_at,
        instanceId=rec.instance_id,
    )


@app.post("/api/v1/streams/{app_id}/stop", response_model=StopStreamResponse)
async def stop_stream(
    app_id: str,
    wait: bool = Query(True),
    timeout: Optional[float] = Query(None, gt=0, le=120),
):
    services = _ensure_services()
    await services.lifecycle.stop_stream(app_id)
    if not wait:
        stopped = not await services.lifecycle.is_stream_running(app_id)
    else:
        stopped = await services.lifecycle.wait_for_stream_to_stop(app_id, timeout=timeout)
    return StopStreamResponse(appId=app_id, stopped=stopped)


@app.delete("/api/v1/streams/{app_id}")
async def clear_stream(app_id: str):
    """Forced clear: frees the app even if its task never acknowledged a stop."""
    services = _ensure_services()
    await services.lifecycle.clear_stream_state(app_id)
    return {"appId": app_id, "cleared": True}


# ---------- apps ----------

def _require_user(request: Request) -> str:
    user_id = request.headers.get(config.USER_ID_HEADER)
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing User Id header")
    return user_id


@app.post("/apps", status_code=201)
async def create_app(request: Request, body: CreateAppRequest):
    services = _ensure_services()
    user_id = _require_user(request)
    try:
        game_app, stream = await provision_app(
            user_id=user_id,
            initial_message=body.message,
            template_id=body.templateId,
            sandbox=services.sandbox,
            apps=services.apps,
            threads=services.threads,
            streams=services.streams,
        )
    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown template {body.templateId}")
    except SandboxError as e:
        return _sandbox_failure(e)
    return {"app": game_app.to_public(), "streamId": stream.stream_id if stream else None}


@app.get("/apps")
async def list_apps(request: Request):
    services = _ensure_services()
    user_id = _require_user(request)
    return {"apps": [a.to_public() for a in await services.apps.list_apps_for_user(user_id)]}


@app.get("/apps/{app_id}")
async def get_app(app_id: str):
    services = _ensure_services()
    game_app = await services.apps.get_app(app_id)
    if game_app is None:
        raise HTTPException(status_code=404, detail="App not found")
    rec = await services.lifecycle.get_record(app_id)
    return {"app": game_app.to_public(), "stream": rec.to_public() if rec else None}


@app.get("/apps/{app_id}/messages")
async def get_app_messages(app_id: str, limit: Optional[int] = Query(None, gt=0)):
    services = _ensure_services()
    if await services.apps.get_app(app_id) is None:
        raise HTTPException(status_code=404, detail="App not found")
    messages: List[Dict[str, Any]] = await services.threads.list_messages(app_id, limit=limit)
    return {"messages": messages}


@app.delete("/apps/{app_id}")
async def delete_app(request: Request, app_id: str):
    services = _ensure_services()
    user_id = _require_user(request)
    if await services.apps.get_app(app_id) is None:
        raise HTTPException(status_code=404, detail="App not found")
    grant = await services.apps.get_app_user(app_id, user_id)
    if grant is None or grant.permissions != "admin":
        raise HTTPException(status_code=403, detail="Only app admins can delete an app")

    await services.lifecycle.stop_stream(app_id)
    if not await services.lifecycle.wait_for_stream_to_stop(app_id):
        await services.lifecycle.clear_stream_state(app_id)
    await services.threads.delete_thread(app_id)
    await services.apps.delete_app(app_id)
    logger.info(f"app {app_id} deleted by {user_id}")
    return {"ok": True}


# ---------- agents ----------

@app.get("/api/v1/agents")
async def list_agents():
    return {"agents": [p.to_dict() for p in all_profiles()], "rules": rule_catalog()}


@app.post("/api/v1/agents/select")
async def preview_agent_selection(body: AgentSelectRequest):
    return {"agent": select_agent(body.text).to_dict()}


# ---------- health ----------

@app.get("/healthz")
async def healthz():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    if SERVICES is None:
        return JSONResponse(status_code=503, content={"ok": False})
    return {"ok": True, "store": config.STUDIO_STORE}
