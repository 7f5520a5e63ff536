"""
Identifier generation.

Ids look like ``session-lq8x2k1a-4f9z0c``: a prefix, the current time in
milliseconds in base 36 and a short random suffix. They are unique enough for
a single process at chat-level concurrency, not cryptographically.
"""

import random
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    """Encode a non-negative integer in base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"

    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str, suffix_length: int = 6) -> str:
    """Generate a ``{prefix}-{base36 timestamp}-{random}`` identifier."""
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=suffix_length))
    return f"{prefix}-{timestamp}-{suffix}"
