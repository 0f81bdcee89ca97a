from __future__ import annotations

import math
from typing import Iterable, Mapping

_CHARS_PER_TOKEN = 4

DEFAULT_CONTEXT_WINDOW = 8192

# (estimated tokens strictly above, window)
_CONTEXT_WINDOW_STEPS = (
    (48000, 131072),
    (24000, 65536),
    (12000, 32768),
    (6000, 16384),
)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters.

    Provider-agnostic; it never consults a real tokenizer.
    """
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Mapping[str, str]]) -> int:
    total_chars = sum(len(str(message.get("content") or "")) for message in messages)
    return math.ceil(total_chars / _CHARS_PER_TOKEN)


def select_context_window(estimated_tokens: int) -> int:
    for threshold, window in _CONTEXT_WINDOW_STEPS:
        if estimated_tokens > threshold:
            return window
    return DEFAULT_CONTEXT_WINDOW
