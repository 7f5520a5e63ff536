"""Per-user conversation context for Bot Manager Agent."""

from .context import ContextStats, ContextStore, format_transcript

__all__ = ["ContextStats", "ContextStore", "format_transcript"]
