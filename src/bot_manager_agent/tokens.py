"""
Coarse token estimation.

Every budget in this package uses the same heuristic: one token per four
characters, rounded up. It is intentionally approximate.
"""

import math
from collections.abc import Iterable

from .models import Message

# Approximate characters per token
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a string."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    """Estimate the combined token count of message contents."""
    return sum(estimate_tokens(m.content) for m in messages)
