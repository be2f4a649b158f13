"""Approximate token estimation for injection budgeting."""

import math

CHARS_PER_TOKEN = 4  # Cross-model estimate (EN text/code/JSON)


def estimate_tokens(text: str) -> int:
    """Estimate token count from character count, rounding up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
