from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class SandboxError(RuntimeError):
    """The sandbox answered but rejected the request (4xx or malformed reply)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SandboxUnavailableError(SandboxError):
    """The sandbox could not be reached or failed on its side (connect/timeout/5xx)."""


class _SandboxAPI:
    def __init__(self, http_client: httpx.AsyncClient, base_url: str, api_key: str = ""):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._http.request(method, url, json=payload, headers=self._headers)
        except httpx.RequestError as e:
            logger.warning(f"sandbox request {method} {path} failed: {e}")
            raise SandboxUnavailableError(f"sandbox_unreachable: {e}") from e
        if resp.status_code >= 500:
            raise SandboxUnavailableError(f"sandbox error {resp.status_code} on {path}", resp.status_code)
        if resp.status_code >= 400:
            raise SandboxError(f"sandbox rejected {path}: {resp.status_code} {resp.text[:200]}", resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise SandboxError(f"sandbox returned non-JSON body for {path}") from e


class DevServerFilesystem(_SandboxAPI):
    """File operations against one repository's running dev server."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, repo_id: str, api_key: str = ""):
        super().__init__(http_client, base_url, api_key)
        self.repo_id = repo_id

    def _body(self, **extra: Any) -> Dict[str, Any]:
        return {"devServer": {"repoId": self.repo_id}, **extra}

    async def ping(self) -> None:
        data = await self._call("POST", "/ephemeral/v1/dev-servers/status", self._body())
        if data.get("running") is False:
            raise SandboxUnavailableError(f"dev server for {self.repo_id} is not running")

    async def read_file(self, path: str) -> str:
        data = await self._call("POST", "/ephemeral/v1/dev-servers/files/read", self._body(path=path))
        return data.get("content", "")

    async def write_file(self, path: str, content: str) -> None:
        await self._call("POST", "/ephemeral/v1/dev-servers/files/write", self._body(path=path, content=content))

    async def list_directory(self, path: str = "/") -> List[str]:
        data = await self._call("POST", "/ephemeral/v1/dev-servers/files/list", self._body(path=path))
        return [str(entry) for entry in data.get("files", [])]


@dataclass
class DevServer:
    repo_id: str
    endpoint: str                 # agent tool endpoint (MCP) for this dev server
    preview_url: Optional[str]
    fs: DevServerFilesystem


class SandboxClient(_SandboxAPI):
    """Git hosting and dev server provisioning on the remote sandbox."""

    async def request_dev_server(self, repo_id: str) -> DevServer:
        data = await self._call("POST", "/ephemeral/v1/dev-servers", {"devServer": {"repoId": repo_id}})
        endpoint = data.get("mcpEphemeralUrl")
        if not endpoint:
            raise SandboxError("dev server reply missing mcpEphemeralUrl")
        fs = DevServerFilesystem(self._http, self._base_url, repo_id, self._api_key)
        return DevServer(repo_id=repo_id, endpoint=endpoint, preview_url=data.get("ephemeralUrl"), fs=fs)

    async def create_git_repository(self, name: str, source_url: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"name": name, "public": True}
        if source_url:
            payload["source"] = {"type": "git", "url": source_url}
        data = await self._call("POST", "/git/v1/repo", payload)
        repo_id = data.get("repoId")
        if not repo_id:
            raise SandboxError("repository reply missing repoId")
        return repo_id

    async def create_identity(self) -> str:
        data = await self._call("POST", "/git/v1/identity", {})
        return data["id"]

    async def grant_git_permission(self, identity_id: str, repo_id: str, permission: str) -> None:
        await self._call(
            "POST",
            f"/git/v1/identity/{identity_id}/permissions/{repo_id}",
            {"permission": permission},
        )

    async def create_git_access_token(self, identity_id: str) -> Dict[str, str]:
        data = await self._call("POST", f"/git/v1/identity/{identity_id}/tokens", {})
        return {"id": data["id"], "token": data["token"]}
