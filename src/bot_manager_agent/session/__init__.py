"""
Session module - durable conversation threads.

Includes:
- SessionStore: one JSON file per session plus mutations
- SessionIndex: derived metadata cache with rebuild-from-files recovery
"""

from .index import SessionIndex
from .store import SessionStore

__all__ = [
    "SessionIndex",
    "SessionStore",
]
