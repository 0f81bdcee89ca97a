from __future__ import annotations

import pytest

from chat_relay.token_utils import (
    DEFAULT_CONTEXT_WINDOW,
    estimate_messages_tokens,
    estimate_tokens,
    select_context_window,
)


@pytest.mark.parametrize(
    ("estimated", "window"),
    [
        (5000, 8192),
        (9000, 16384),
        (20000, 32768),
        (40000, 65536),
        (60000, 131072),
    ],
)
def test_context_window_steps(estimated: int, window: int) -> None:
    assert select_context_window(estimated) == window


def test_context_window_boundaries_are_exclusive() -> None:
    assert select_context_window(0) == DEFAULT_CONTEXT_WINDOW
    assert select_context_window(6000) == 8192
    assert select_context_window(6001) == 16384
    assert select_context_window(48000) == 65536
    assert select_context_window(48001) == 131072


def test_estimate_is_rough_chars_over_four() -> None:
    # approximation only: allow one token of slack either way
    text = "word " * 100
    assert abs(estimate_tokens(text) - len(text) / 4) <= 1
    assert estimate_tokens("") == 0


def test_messages_estimate_sums_content() -> None:
    messages = [{"role": "system", "content": "a" * 400}, {"role": "user", "content": "b" * 400}]
    assert 190 <= estimate_messages_tokens(messages) <= 210
