"""
Secondary index over session files.

The index is a derived cache of the metadata stored in each session file. It
answers listing and filtering queries without reading full message logs. When
it is missing, corrupt or found to disagree with a session file, the session
files win and the index is rebuilt from a directory scan.
"""

from pathlib import Path

import structlog
from pydantic import ValidationError

from ..models import SessionIndexData, SessionMetadata, SessionRecord, utcnow
from ..storage import list_json_files, read_json, write_json

logger = structlog.get_logger()


class SessionIndex:
    """Process-local session index backed by a JSON file."""

    def __init__(self, path: Path, sessions_dir: Path):
        self.path = path
        self.sessions_dir = sessions_dir
        self._data: SessionIndexData | None = None
        self.stale = False

    @property
    def loaded(self) -> bool:
        return self._data is not None

    async def load(self) -> SessionIndexData:
        """Return the cached index, reading it from disk on first use."""
        if self._data is not None:
            return self._data

        try:
            raw = await read_json(self.path)
            self._data = SessionIndexData.model_validate(raw)
        except FileNotFoundError:
            self._data = SessionIndexData()
            self.stale = True
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Session index unreadable, starting empty", path=str(self.path), error=str(e))
            self._data = SessionIndexData()
            self.stale = True

        return self._data

    async def save(self) -> None:
        """Persist the index. Raises StorageError on failure."""
        if self._data is None:
            return

        self._data.last_updated = utcnow()
        await write_json(self.path, self._data.to_json_dict())

    def get(self, session_id: str) -> SessionMetadata | None:
        if self._data is None:
            return None
        metadata = self._data.sessions.get(session_id)
        return metadata.model_copy() if metadata else None

    def all(self) -> list[SessionMetadata]:
        if self._data is None:
            return []
        return [m.model_copy() for m in self._data.sessions.values()]

    def for_user(self, user_id: str) -> list[SessionMetadata]:
        if self._data is None:
            return []
        ids = self._data.user_sessions.get(user_id, [])
        return [self._data.sessions[i].model_copy() for i in ids if i in self._data.sessions]

    def upsert(self, metadata: SessionMetadata) -> None:
        """Mirror a session's metadata into both index maps."""
        if self._data is None:
            self._data = SessionIndexData()

        session_id = metadata.session_id
        self._data.sessions[session_id] = metadata.model_copy()

        if metadata.user_id:
            ids = self._data.user_sessions.setdefault(metadata.user_id, [])
            if session_id not in ids:
                ids.append(session_id)

    def remove(self, session_id: str) -> SessionMetadata | None:
        """Drop a session from both maps. Returns the removed metadata."""
        if self._data is None:
            return None

        metadata = self._data.sessions.pop(session_id, None)
        for user_id, ids in list(self._data.user_sessions.items()):
            if session_id in ids:
                ids.remove(session_id)
            if not ids:
                del self._data.user_sessions[user_id]
        return metadata

    def matches(self, metadata: SessionMetadata) -> bool:
        """Whether the cached entry equals metadata read from a session file."""
        cached = self.get(metadata.session_id)
        return cached is not None and cached.model_dump() == metadata.model_dump()

    async def rebuild(self) -> int:
        """Reconstruct the index from every session file. Returns the count."""
        data = SessionIndexData()

        for path in await list_json_files(self.sessions_dir):
            try:
                record = SessionRecord.model_validate(await read_json(path))
            except (OSError, ValueError, ValidationError) as e:
                logger.warning("Skipping unreadable session file", path=str(path), error=str(e))
                continue

            metadata = record.metadata
            data.sessions[metadata.session_id] = metadata
            if metadata.user_id:
                data.user_sessions.setdefault(metadata.user_id, []).append(metadata.session_id)

        # Keep per-user lists in creation order
        for ids in data.user_sessions.values():
            ids.sort(key=lambda i: data.sessions[i].created_at)

        self._data = data
        self.stale = False
        logger.info("Session index rebuilt", sessions=len(data.sessions))
        return len(data.sessions)

    def invalidate(self) -> None:
        """Forget the cached index so the next read goes to disk."""
        self._data = None
        self.stale = False
