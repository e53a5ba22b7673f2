"""Pydantic models for chat threads, messages and stream metadata."""

import time
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def parse_timestamp(value: Any) -> int:
    """Convert an API timestamp (ISO string or epoch ms) to epoch milliseconds."""
    if value is None or value == "":
        return now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).replace("Z", "+00:00")
    try:
        return int(datetime.fromisoformat(text).timestamp() * 1000)
    except ValueError:
        return now_ms()


class StreamingMetadata(BaseModel):
    """Routing metadata announced by the agent for the current turn. Never persisted."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model: Optional[str] = None
    complexity: Optional[str] = None  # simple, moderate, complex
    routing: Optional[str] = None  # direct, orchestrator
    tools: Optional[list[str]] = None
    tool_source: Optional[str] = Field(default=None, alias="toolSource")
    history_length: Optional[int] = Field(default=None, alias="historyLength")
    models: Optional[dict[str, str]] = None

    @field_validator("models", mode="before")
    @classmethod
    def drop_unnamed_models(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: v for k, v in value.items() if isinstance(v, str)}
        return value


class RunMetrics(BaseModel):
    """Run-level measurements reported at the end of a turn."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    model: Optional[str] = None
    route: Optional[str] = None

    @field_validator("duration_ms", mode="before")
    @classmethod
    def round_duration(cls, value: Any) -> Any:
        if isinstance(value, float):
            return round(value)
        return value


class Message(BaseModel):
    """One turn in a conversation."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    images: list[str] = Field(default_factory=list)

    # Assistant enrichment, filled after the stream completes
    tools_used: Optional[list[str]] = None
    execution_time: Optional[int] = None
    latency_ms: Optional[int] = None
    model: Optional[str] = None
    complexity: Optional[str] = None
    routing: Optional[str] = None
    tool_source: Optional[str] = None
    available_models: Optional[dict[str, str]] = None

    # Client-side state
    regenerating: bool = False
    local: bool = False  # never persisted (e.g. synthetic error turns)
    partial_content: Optional[str] = None

    @classmethod
    def from_api(cls, row: dict) -> "Message":
        """Build a message from a /api/chat/messages row."""
        return cls(
            id=str(row["id"]),
            role=row.get("role", "assistant"),
            content=row.get("content") or "",
            timestamp=parse_timestamp(row.get("created_at")),
        )


class Thread(BaseModel):
    """A conversation container."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    title: str = "New Chat"
    messages: list[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    tags: list[str] = Field(default_factory=list)
    folder: Optional[str] = None
    pinned: bool = False
    archived: bool = False
    enabled_tools: Optional[list[str]] = None
    model: Optional[str] = None
    agent_style: Optional[str] = None
    branched_from: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith("temp_")

    @classmethod
    def from_api(
        cls,
        row: dict,
        default_tools: Optional[list[str]] = None,
        default_model: Optional[str] = None,
        default_style: Optional[str] = None,
    ) -> "Thread":
        """Build a thread from a /api/chat/threads row."""
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "New Chat",
            created_at=parse_timestamp(row.get("created_at")),
            tags=row.get("tags") or [],
            folder=row.get("folder"),
            pinned=bool(row.get("pinned")),
            archived=bool(row.get("archived")),
            enabled_tools=row.get("enabled_tools") or default_tools,
            model=row.get("model") or default_model,
            agent_style=row.get("agent_style") or default_style,
        )


class StreamRequest(BaseModel):
    """Body of POST /api/agent/smart-stream."""

    model_config = ConfigDict(protected_namespaces=())

    input_as_text: str
    thread_id: str
    images: Optional[list[str]] = None
    model: Optional[str] = None
    enabled_tools: Optional[list[str]] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)
