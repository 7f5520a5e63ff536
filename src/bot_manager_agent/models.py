"""
Persisted data models for Bot Manager Agent

Uses pydantic models serialized to camelCase JSON, so session files stay
readable and compatible with the layout other tools expect.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base class for all persisted models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageRole(str, Enum):
    """Message roles for conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolCallLog(CamelModel):
    """A tool invocation recorded alongside an assistant message."""

    tool: str
    input: Any = None
    result: str = ""


class Message(CamelModel):
    """A single conversation message. Immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    tool_calls: list[ToolCallLog] | None = None

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @classmethod
    def user(cls, content: str, **kwargs: Any) -> "Message":
        return cls(role=MessageRole.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str, **kwargs: Any) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, **kwargs)

    @classmethod
    def system(cls, content: str, **kwargs: Any) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content, **kwargs)


class SessionMetadata(CamelModel):
    """Metadata for a durable session. Mirrored in the session index."""

    session_id: str
    name: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime = Field(default_factory=utcnow)
    message_count: int = 0

    # Ownership and environment
    user_id: str | None = None
    model: str | None = None
    git_branch: str | None = None
    project_path: str | None = None

    # Usage
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    # Lineage
    is_forked: bool = False
    parent_session_id: str | None = None


class SessionRecord(CamelModel):
    """A full session file: metadata, message log and optional summary.

    ``compacted_message_count`` is how many leading messages the summary
    already covers. They stay in the log but no longer count towards the
    working history.
    """

    metadata: SessionMetadata
    messages: list[Message] = Field(default_factory=list)
    summary: str | None = None
    compacted_message_count: int = 0

    @property
    def session_id(self) -> str:
        return self.metadata.session_id

    @property
    def uncompacted_messages(self) -> list[Message]:
        """Messages appended after the last compaction."""
        return self.messages[min(self.compacted_message_count, len(self.messages)):]


class SessionIndexData(CamelModel):
    """On-disk shape of the global session index."""

    sessions: dict[str, SessionMetadata] = Field(default_factory=dict)
    user_sessions: dict[str, list[str]] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)


class UserSessionPointer(CamelModel):
    """Pointer from a user to their most recently active session."""

    session_id: str
    saved_at: datetime = Field(default_factory=utcnow)
