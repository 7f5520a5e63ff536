"""
Context Store - per-user working memory used to enrich prompts.

Each user has a rolling, capped JSON log of recent messages, separate from
durable session history. Reads go through a short-lived cache; appends are
deduplicated against the previous message. A small pointer file per user,
kept in its own subdirectory, remembers the last active session so
independent turns can resume it.

Like the session store, this assumes one writer per user id at a time.
"""

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError

from ..models import Message, MessageRole, UserSessionPointer
from ..storage import list_json_files, read_json, remove_file, write_json
from ..tokens import estimate_tokens

logger = structlog.get_logger()

MAX_MESSAGES_PER_USER = 200
MAX_CONTEXT_TOKENS = 50_000
CACHE_TTL_SECONDS = 5 * 60
DEDUP_WINDOW_SECONDS = 2.0

SESSION_POINTER_DIR = "sessions"

ROLE_LABELS = {
    MessageRole.USER: "Human",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.SYSTEM: "System",
}

_messages_adapter = TypeAdapter(list[Message])
_unsafe_chars = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class _CacheEntry:
    messages: list[Message]
    fetched_at: float


@dataclass
class ContextStats:
    """Summary of a user's stored context."""
    message_count: int
    first_message: datetime | None
    last_message: datetime | None


def format_transcript(messages: list[Message]) -> str:
    """Render messages as a role-labelled transcript, oldest first."""
    return "\n\n".join(f"{ROLE_LABELS[m.role]}: {m.content}" for m in messages)


class ContextStore:
    """Rolling per-user conversation buffer with caching and dedup."""

    def __init__(
        self,
        users_dir: Path,
        max_messages: int = MAX_MESSAGES_PER_USER,
        max_context_tokens: int = MAX_CONTEXT_TOKENS,
        cache_ttl: float = CACHE_TTL_SECONDS,
        dedup_window: float = DEDUP_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.users_dir = Path(users_dir)
        self.max_messages = max_messages
        self.max_context_tokens = max_context_tokens
        self.cache_ttl = cache_ttl
        self.dedup_window = dedup_window
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    def _file_name(self, user_id: str) -> str:
        return _unsafe_chars.sub("_", user_id)

    def _context_path(self, user_id: str) -> Path:
        return self.users_dir / f"{self._file_name(user_id)}.json"

    def _pointer_path(self, user_id: str) -> Path:
        return self.users_dir / SESSION_POINTER_DIR / f"{self._file_name(user_id)}.json"

    def is_duplicate(self, messages: list[Message], message: Message) -> bool:
        """Same role and content as the last message, within the dedup window."""
        if not messages:
            return False

        last = messages[-1]
        elapsed = (message.timestamp - last.timestamp).total_seconds()
        return (
            last.role == message.role
            and last.content == message.content
            and elapsed < self.dedup_window
        )

    async def load(self, user_id: str) -> list[Message]:
        """Load a user's context, served from cache while fresh."""
        cached = self._cache.get(user_id)
        if cached and self._clock() - cached.fetched_at < self.cache_ttl:
            return list(cached.messages)

        try:
            messages = _messages_adapter.validate_python(await read_json(self._context_path(user_id)))
        except FileNotFoundError:
            return []
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Unreadable context file", user_id=user_id, error=str(e))
            return []

        self._cache[user_id] = _CacheEntry(messages=list(messages), fetched_at=self._clock())
        return messages

    async def save(self, user_id: str, messages: list[Message]) -> None:
        """Persist a user's context, keeping only the newest messages."""
        trimmed = messages[-self.max_messages:]
        await write_json(
            self._context_path(user_id),
            [m.to_json_dict() for m in trimmed],
        )
        self._cache[user_id] = _CacheEntry(messages=list(trimmed), fetched_at=self._clock())

    async def append(self, user_id: str, message: Message) -> bool:
        """Append a message unless it duplicates the previous one."""
        messages = await self.load(user_id)

        if self.is_duplicate(messages, message):
            logger.debug("Dropped duplicate context message", user_id=user_id, role=message.role.value)
            return False

        messages.append(message)
        await self.save(user_id, messages)
        return True

    async def recent_messages(self, user_id: str, max_count: int = 50) -> list[Message]:
        """Newest messages that fit both ``max_count`` and the token budget."""
        messages = await self.load(user_id)
        recent: list[Message] = []
        total_tokens = 0

        for message in reversed(messages):
            if len(recent) >= max_count:
                break

            tokens = estimate_tokens(message.content)
            if total_tokens + tokens > self.max_context_tokens:
                break

            recent.append(message)
            total_tokens += tokens

        recent.reverse()
        return recent

    async def get_recent_context(self, user_id: str, max_count: int = 50) -> str:
        """Recent context as a transcript ready to prepend to a prompt."""
        return format_transcript(await self.recent_messages(user_id, max_count))

    async def clear(self, user_id: str) -> None:
        """Delete a user's context log."""
        await remove_file(self._context_path(user_id))
        self._cache.pop(user_id, None)

    async def save_user_session(self, user_id: str, session_id: str) -> None:
        pointer = UserSessionPointer(session_id=session_id)
        await write_json(self._pointer_path(user_id), pointer.to_json_dict())

    async def get_user_last_session_id(self, user_id: str) -> str | None:
        try:
            pointer = UserSessionPointer.model_validate(await read_json(self._pointer_path(user_id)))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Unreadable session pointer", user_id=user_id, error=str(e))
            return None
        return pointer.session_id or None

    async def clear_user_session(self, user_id: str) -> None:
        await remove_file(self._pointer_path(user_id))

    async def clear_all(self, user_id: str) -> None:
        """Forget everything about a user: context, session pointer and cache."""
        await self.clear(user_id)
        await self.clear_user_session(user_id)
        self.invalidate_cache(user_id)
        logger.info("Context cleared", user_id=user_id)

    async def list_users(self) -> list[str]:
        """User ids (as stored on disk) that have a context log."""
        return [path.stem for path in await list_json_files(self.users_dir)]

    async def user_stats(self, user_id: str) -> ContextStats:
        messages = await self.load(user_id)
        return ContextStats(
            message_count=len(messages),
            first_message=messages[0].timestamp if messages else None,
            last_message=messages[-1].timestamp if messages else None,
        )

    def invalidate_cache(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    def invalidate_all_caches(self) -> None:
        self._cache.clear()
