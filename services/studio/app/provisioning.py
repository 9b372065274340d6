import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from services.studio.app.apps import TEMPLATES, AppRecord, AppStore, AppUser
from services.studio.app.dispatch import GENERIC
from services.studio.app.sandbox import SandboxClient
from services.studio.app.streaming import ResumableStream, StreamManager
from services.studio.app.telemetry import span
from services.studio.app.threads import ConversationStore

logger = logging.getLogger(__name__)


async def provision_app(
    *,
    user_id: str,
    initial_message: Optional[str],
    template_id: str,
    sandbox: SandboxClient,
    apps: AppStore,
    threads: ConversationStore,
    streams: StreamManager,
) -> Tuple[AppRecord, Optional[ResumableStream]]:
    """
    Create a game app: clone the template into a new repository, give the user a
    write identity and token, persist app and access grant together, open the
    conversation thread and, when an initial message is given, start building.
    """
    template = TEMPLATES.get(template_id)
    if template is None:
        raise KeyError(template_id)

    with span("studio.apps.provision", {"studio.template": template_id}):
        repo_id = await sandbox.create_git_repository(
            name=f"game-{uuid.uuid4().hex[:12]}", source_url=template["repo"]
        )
        identity = await sandbox.create_identity()
        await sandbox.grant_git_permission(identity, repo_id, "write")
        token = await sandbox.create_git_access_token(identity)
        dev_server = await sandbox.request_dev_server(repo_id)

        app = AppRecord.new(name=initial_message or "", git_repo=repo_id)
        owner = AppUser(
            app_id=app.id,
            user_id=user_id,
            permissions="admin",
            sandbox_identity=identity,
            access_token=token["token"],
            access_token_id=token["id"],
        )
        await apps.create_app(app, owner)
        await threads.create_thread(app.id, resource_id=app.id)
        logger.info(f"provisioned app {app.id} (repo {repo_id}) for user {user_id}")

        stream: Optional[ResumableStream] = None
        if initial_message:
            message: Dict[str, Any] = {
                "id": str(uuid.uuid4()),
                "role": "user",
                "parts": [{"type": "text", "text": initial_message}],
                "createdAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
            stream = await streams.send_message_with_streaming(
                GENERIC, app.id, dev_server.endpoint, dev_server.fs, message
            )
        return app, stream
