"""
Durable session storage.

Each session lives in its own ``{sessionId}.json`` file holding metadata, the
ordered message log and an optional summary. A SessionIndex mirrors the
metadata for cheap listing.

There is no locking. At most one logical writer per session id may be active
at a time; callers serialize turns per session. Two interleaved
read-modify-write calls on the same session lose one of the updates.
"""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

import structlog

from ..errors import StorageError
from ..ids import generate_id
from ..models import Message, SessionMetadata, SessionRecord, utcnow
from ..storage import read_json, remove_file, write_json
from .index import SessionIndex

logger = structlog.get_logger()

SORT_FIELDS = ("created_at", "last_message_at")

# Metadata fields callers may change through update()
UPDATABLE_FIELDS = frozenset({
    "name",
    "model",
    "last_message_at",
    "cost_usd",
    "input_tokens",
    "output_tokens",
})

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


async def detect_git_branch(project_path: str) -> str | None:
    """Return the current git branch of a directory, or None."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "rev-parse", "--abbrev-ref", "HEAD",
            cwd=project_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
    except OSError:
        return None

    if proc.returncode != 0:
        return None
    return stdout.decode().strip() or None


class SessionStore:
    """File-per-session store with a derived secondary index."""

    def __init__(
        self,
        sessions_dir: Path,
        index_file: Path,
        detect_branch: bool = True,
    ):
        self.sessions_dir = Path(sessions_dir)
        self.index = SessionIndex(Path(index_file), self.sessions_dir)
        self.detect_branch = detect_branch

    def _session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    async def _load_index(self) -> SessionIndex:
        """Load the index, rebuilding it first when missing or stale."""
        await self.index.load()
        if self.index.stale:
            await self.index.rebuild()
            try:
                await self.index.save()
            except StorageError as e:
                logger.warning("Could not persist rebuilt session index", error=str(e))
        return self.index

    async def _persist(self, record: SessionRecord) -> None:
        """Write a session file, then mirror its metadata into the index."""
        await write_json(self._session_path(record.session_id), record.to_json_dict())
        await self._load_index()
        self.index.upsert(record.metadata)
        await self.index.save()

    async def create(
        self,
        user_id: str | None = None,
        name: str | None = None,
        project_path: str | None = None,
        model: str | None = None,
        parent_session_id: str | None = None,
        git_branch: str | None = None,
    ) -> SessionMetadata:
        """Create an empty session and register it in the index."""
        project_path = project_path or os.getcwd()
        if git_branch is None and self.detect_branch:
            git_branch = await detect_git_branch(project_path)

        now = utcnow()
        metadata = SessionMetadata(
            session_id=generate_id("session"),
            name=name,
            created_at=now,
            last_message_at=now,
            user_id=user_id,
            model=model,
            git_branch=git_branch,
            project_path=project_path,
            is_forked=parent_session_id is not None,
            parent_session_id=parent_session_id,
        )

        await self._persist(SessionRecord(metadata=metadata))
        logger.info("Created session", session_id=metadata.session_id, user_id=user_id)
        return metadata.model_copy()

    async def get(self, session_id: str) -> SessionRecord | None:
        """Read a session file. Missing or corrupt files yield None."""
        if not _SESSION_ID_RE.match(session_id):
            return None

        path = self._session_path(session_id)
        try:
            record = SessionRecord.model_validate(await read_json(path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable session file", session_id=session_id, error=str(e))
            return None

        if self.index.loaded and not self.index.matches(record.metadata):
            logger.warning("Session index diverged from session file", session_id=session_id)
            self.index.stale = True

        return record

    async def get_metadata(self, session_id: str) -> SessionMetadata | None:
        """Look up metadata from the index only."""
        index = await self._load_index()
        return index.get(session_id)

    async def list_sessions(
        self,
        user_id: str | None = None,
        sort_by: str = "last_message_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 50,
    ) -> list[SessionMetadata]:
        """List session metadata, optionally for one user, sorted and paginated."""
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Cannot sort sessions by {sort_by!r}")
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"Unknown sort order {sort_order!r}")

        index = await self._load_index()
        sessions = index.for_user(user_id) if user_id else index.all()
        sessions.sort(key=lambda m: getattr(m, sort_by), reverse=sort_order == "desc")
        return sessions[offset:offset + limit]

    async def update(self, session_id: str, **fields: Any) -> SessionMetadata | None:
        """Merge metadata fields. Re-stamps last activity unless given."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        record = await self.get(session_id)
        if record is None:
            return None

        if fields.get("last_message_at") is None:
            fields["last_message_at"] = utcnow()

        record.metadata = record.metadata.model_copy(update=fields)
        await self._persist(record)
        return record.metadata.model_copy()

    async def rename(self, session_id: str, name: str) -> SessionMetadata | None:
        return await self.update(session_id, name=name)

    async def record_usage(
        self,
        session_id: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> SessionMetadata | None:
        """Add token and cost usage from an agent run to the session totals."""
        record = await self.get(session_id)
        if record is None:
            return None

        metadata = record.metadata
        return await self.update(
            session_id,
            input_tokens=metadata.input_tokens + input_tokens,
            output_tokens=metadata.output_tokens + output_tokens,
            cost_usd=metadata.cost_usd + cost_usd,
            last_message_at=metadata.last_message_at,
        )

    async def append_message(self, session_id: str, message: Message) -> SessionMetadata | None:
        """Append a message. Silently does nothing for unknown sessions."""
        record = await self.get(session_id)
        if record is None:
            logger.debug("Append to missing session ignored", session_id=session_id)
            return None

        record.messages.append(message)
        record.metadata.message_count = len(record.messages)
        record.metadata.last_message_at = utcnow()

        await self._persist(record)
        return record.metadata.model_copy()

    async def set_summary(
        self,
        session_id: str,
        summary: str,
        compacted_message_count: int | None = None,
    ) -> bool:
        """Store a summary, optionally marking how many messages it covers."""
        record = await self.get(session_id)
        if record is None:
            return False

        record.summary = summary
        if compacted_message_count is not None:
            record.compacted_message_count = min(compacted_message_count, len(record.messages))
        await self._persist(record)
        return True

    async def fork(
        self,
        session_id: str,
        user_id: str | None = None,
        name: str | None = None,
    ) -> SessionMetadata | None:
        """Create an independent copy of a session's messages and summary."""
        source = await self.get(session_id)
        if source is None:
            return None

        forked = await self.create(
            user_id=user_id or source.metadata.user_id,
            name=name or f"Fork of {source.metadata.name or session_id}",
            project_path=source.metadata.project_path,
            model=source.metadata.model,
            parent_session_id=session_id,
            git_branch=source.metadata.git_branch,
        )

        record = SessionRecord(
            metadata=forked,
            messages=[m.model_copy(deep=True) for m in source.messages],
            summary=source.summary,
            compacted_message_count=source.compacted_message_count,
        )
        record.metadata.message_count = len(record.messages)
        await self._persist(record)

        logger.info("Forked session", source=session_id, session_id=forked.session_id)
        return record.metadata.model_copy()

    async def clear(self, session_id: str) -> bool:
        """Empty the message log and summary, keeping the session itself."""
        record = await self.get(session_id)
        if record is None:
            return False

        record.messages = []
        record.summary = None
        record.compacted_message_count = 0
        record.metadata.message_count = 0
        record.metadata.last_message_at = utcnow()

        await self._persist(record)
        logger.info("Session cleared", session_id=session_id)
        return True

    async def delete(self, session_id: str) -> bool:
        """Remove a session file and its index entries."""
        index = await self._load_index()

        removed_file = False
        if _SESSION_ID_RE.match(session_id):
            removed_file = await remove_file(self._session_path(session_id))

        metadata = index.remove(session_id)
        if metadata is None and not removed_file:
            return False

        await index.save()
        logger.info("Session deleted", session_id=session_id, file_removed=removed_file)
        return True

    async def get_user_last_session(self, user_id: str) -> SessionMetadata | None:
        sessions = await self.list_sessions(user_id=user_id, limit=1)
        return sessions[0] if sessions else None

    async def count(self, user_id: str | None = None) -> int:
        index = await self._load_index()
        if user_id:
            return len(index.for_user(user_id))
        return len(index.all())

    async def find_by_git_branch(self, branch: str) -> list[SessionMetadata]:
        index = await self._load_index()
        return [m for m in index.all() if m.git_branch == branch]

    async def find_forks(self, parent_session_id: str) -> list[SessionMetadata]:
        index = await self._load_index()
        return [m for m in index.all() if m.parent_session_id == parent_session_id]

    async def rebuild_index(self) -> int:
        """Rebuild the index from a full scan of session files and persist it."""
        count = await self.index.rebuild()
        await self.index.save()
        return count

    def invalidate_cache(self) -> None:
        """Drop the in-memory index; call after editing session files directly."""
        self.index.invalidate()
