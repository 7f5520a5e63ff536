"""
Events emitted by the external agent loop.

The agent runner yields a closed set of event types. Consumers dispatch on
them with ``match``:

    match event:
        case TextDelta(text=text): ...
        case ToolStarted(name=name): ...
        case RunFinished(success=True): ...

parse_sdk_message() converts the loosely-typed dict messages produced by agent
SDKs (``system``/``assistant``/``result`` messages) into these events.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Union

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolStarted:
    name: str
    input: Any = None
    tool_use_id: str | None = None


@dataclass(frozen=True)
class ToolFinished:
    content: str
    tool_use_id: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class PermissionDenial:
    tool: str
    reason: str


@dataclass(frozen=True)
class RunFinished:
    """Terminal event of a run. Exactly one is expected per run."""
    success: bool
    result: str | None = None
    session_id: str | None = None
    errors: tuple[str, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    permission_denials: tuple[PermissionDenial, ...] = field(default=())


AgentEvent = Union[SessionStarted, TextDelta, ThinkingDelta, ToolStarted, ToolFinished, RunFinished]


def _stringify(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Tool results may be a list of content blocks
        parts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
        if parts:
            return "".join(parts)
    return json.dumps(content, default=str)


def _content_blocks(raw: dict[str, Any]) -> list[dict[str, Any]]:
    content = raw.get("content")
    if content is None and isinstance(raw.get("message"), dict):
        content = raw["message"].get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def parse_sdk_message(raw: dict[str, Any]) -> list[AgentEvent]:
    """Translate one SDK message into zero or more agent events."""
    msg_type = raw.get("type")
    events: list[AgentEvent] = []

    if msg_type == "system":
        if raw.get("subtype") == "init" and raw.get("session_id"):
            events.append(SessionStarted(session_id=raw["session_id"]))

    elif msg_type in ("assistant", "user"):
        for block in _content_blocks(raw):
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(TextDelta(text=block["text"]))
            elif block_type == "thinking" and block.get("thinking"):
                events.append(ThinkingDelta(text=block["thinking"]))
            elif block_type == "tool_use" and block.get("name"):
                events.append(ToolStarted(
                    name=block["name"],
                    input=block.get("input"),
                    tool_use_id=block.get("id"),
                ))
            elif block_type == "tool_result" and block.get("content") is not None:
                events.append(ToolFinished(
                    content=_stringify(block["content"]),
                    tool_use_id=block.get("tool_use_id"),
                    is_error=bool(block.get("is_error", False)),
                ))

    elif msg_type == "result":
        usage = raw.get("usage") or {}
        denials = tuple(
            PermissionDenial(tool=str(d.get("tool", "")), reason=str(d.get("reason", "")))
            for d in raw.get("permission_denials") or []
            if isinstance(d, dict)
        )
        success = raw.get("subtype") == "success"
        errors = tuple(str(e) for e in raw.get("errors") or [])
        if not success and not errors:
            errors = (f"Agent failed: {raw.get('subtype', 'unknown')}",)

        events.append(RunFinished(
            success=success,
            result=raw.get("result") if success else None,
            session_id=raw.get("session_id"),
            errors=errors,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            cost_usd=float(raw.get("total_cost_usd") or 0.0),
            permission_denials=denials,
        ))

    else:
        logger.debug("Ignoring agent message", message_type=msg_type)

    return events
