"""Pydantic models for the studio HTTP API."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UIMessage(BaseModel):
    """Chat message as sent by the browser client (role + typed parts)."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: str = "user"
    parts: List[Dict[str, Any]] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: List[UIMessage] = Field(default_factory=list)


class CreateAppRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: Optional[str] = None
    templateId: str = "phaser"


class AgentSelectRequest(BaseModel):
    text: str = ""


class StreamStatusResponse(BaseModel):
    appId: str
    running: bool
    state: str = "none"
    sessionId: Optional[str] = None
    startedAt: Optional[str] = None
    updatedAt: Optional[str] = None
    instanceId: Optional[str] = None


class StopStreamResponse(BaseModel):
    appId: str
    stopped: bool
