from __future__ import annotations

import asyncio
from typing import AsyncIterator, List

import pytest

from chat_relay.errors import StreamTimeoutError, UpstreamError
from chat_relay.providers import codecs
from chat_relay.providers.base import CompletionRequest, PromptMessage, SamplingOptions
from chat_relay.providers.lines import iter_lines


async def _text_chunks(*pieces: str, delay: float = 0.0) -> AsyncIterator[str]:
    for piece in pieces:
        if delay:
            await asyncio.sleep(delay)
        yield piece


async def _collect(chunks: AsyncIterator[str], **kwargs) -> List[str]:
    return [line async for line in iter_lines(chunks, **kwargs)]


async def test_iter_lines_joins_partial_lines() -> None:
    lines = await _collect(_text_chunks('{"a":', '1}\n{"b"', ":2}\r\n", '{"c":3}'))
    assert lines == ['{"a":1}', '{"b":2}', '{"c":3}']


async def test_iter_lines_idle_timeout() -> None:
    async def stalled() -> AsyncIterator[str]:
        yield "first\n"
        await asyncio.sleep(5)
        yield "never\n"

    seen: List[str] = []
    with pytest.raises(StreamTimeoutError):
        async for line in iter_lines(stalled(), idle_timeout=0.05, provider="ollama"):
            seen.append(line)
    assert seen == ["first"]


async def test_iter_lines_total_timeout() -> None:
    async def slow_drip() -> AsyncIterator[str]:
        while True:
            await asyncio.sleep(0.02)
            yield "x\n"

    with pytest.raises(StreamTimeoutError) as excinfo:
        await _collect(slow_drip(), idle_timeout=1.0, total_timeout=0.1)
    assert "total timeout" in excinfo.value.message


def test_ollama_line_content_and_done() -> None:
    event = codecs.parse_ollama_line('{"message":{"role":"assistant","content":"Hi"},"done":false}')
    assert event is not None and event.content == "Hi" and not event.done
    final = codecs.parse_ollama_line('{"message":{"content":""},"done":true}')
    assert final is not None and final.done


def test_ollama_error_payload() -> None:
    event = codecs.parse_ollama_line('{"error":"model \\"nope\\" not found"}')
    assert event is not None
    assert "not found" in (event.error or "")


def test_malformed_json_line_is_upstream_error() -> None:
    with pytest.raises(UpstreamError):
        codecs.parse_ollama_line('{"message": {"content": "trunc')


def test_openai_sse_lines() -> None:
    assert codecs.parse_openai_line(": keep-alive") is None
    assert codecs.parse_openai_line("event: ping") is None
    delta = codecs.parse_openai_line('data: {"choices":[{"delta":{"content":"He"}}]}')
    assert delta is not None and delta.content == "He"
    finish = codecs.parse_openai_line('data: {"choices":[{"delta":{},"finish_reason":"stop"}]}')
    assert finish is not None and finish.content == "" and not finish.done
    done = codecs.parse_openai_line("data: [DONE]")
    assert done is not None and done.done


def test_anthropic_typed_events() -> None:
    assert codecs.parse_anthropic_line("event: content_block_delta") is None
    assert codecs.parse_anthropic_line('data: {"type":"message_start","message":{}}') is None
    delta = codecs.parse_anthropic_line('data: {"type":"content_block_delta","delta":{"type":"text_delta","text":"ok"}}')
    assert delta is not None and delta.content == "ok"
    stop = codecs.parse_anthropic_line('data: {"type":"message_stop"}')
    assert stop is not None and stop.done
    err = codecs.parse_anthropic_line('data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}')
    assert err is not None and err.error == "Overloaded"


def test_google_candidates_from_sse_frames() -> None:
    line = '{"candidates":[{"content":{"parts":[{"text":"Bonjour"}],"role":"model"}}]}'
    sse = codecs.parse_google_line("data: " + line)
    assert sse is not None and sse.content == "Bonjour"
    assert codecs.parse_google_line("data: ") is None
    assert codecs.parse_google_line(": keep-alive") is None
    assert codecs.parse_google_line("[") is None


def _request() -> CompletionRequest:
    return CompletionRequest(
        model="m",
        messages=(
            PromptMessage("system", "You are terse."),
            PromptMessage("system", "Relevant context"),
            PromptMessage("user", "hi"),
            PromptMessage("assistant", "hello"),
            PromptMessage("user", "again"),
        ),
        context_window=16384,
        options=SamplingOptions(temperature=0.2, num_predict=50),
    )


def test_ollama_payload_carries_num_ctx() -> None:
    payload = codecs.build_ollama_payload(_request())
    assert payload["stream"] is True
    assert payload["options"]["num_ctx"] == 16384
    assert payload["options"]["temperature"] == 0.2
    assert len(payload["messages"]) == 5


def test_anthropic_payload_joins_system_messages() -> None:
    payload = codecs.build_anthropic_payload(_request())
    assert payload["system"] == "You are terse.\n\nRelevant context"
    assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
    assert payload["max_tokens"] == 50


def test_google_payload_maps_assistant_to_model() -> None:
    payload = codecs.build_google_payload(_request())
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["systemInstruction"]["parts"][0]["text"].startswith("You are terse.")
    assert payload["generationConfig"]["maxOutputTokens"] == 50
