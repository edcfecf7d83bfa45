"""Shared utility functions used across EpicScore modules."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3).

    ``round()`` rounds halves to even, which is not what the scoring tables expect.
    """
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def truncate(text: str, limit: int) -> str:
    """Shorten *text* to at most *limit* characters, marking the cut with ``...``."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def parse_int(text: str) -> int | None:
    """Parse a user-typed integer, None if it isn't one."""
    try:
        return int(text.strip())
    except (ValueError, AttributeError):
        return None


def normalize_handle(handle: str) -> str:
    return handle.strip().lstrip("@")
