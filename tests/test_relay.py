from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, patch

import aiosqlite
import httpx
import pytest

from chat_relay.credentials import CredentialStore
from chat_relay.errors import ChatNotFoundError, ProviderUnavailableError
from chat_relay.persistence import ChatStore
from chat_relay.providers import ProviderRegistry
from chat_relay.services.audit import AuditLogger
from chat_relay.services.context import ContextAssembler
from chat_relay.services.relay import (
    EMPTY_RESPONSE_ERROR,
    PERSISTENCE_ERROR_MESSAGE,
    ChatTurn,
    ChatTurnRelay,
    TurnState,
)
from chat_relay.services.settings import SettingsService
from chat_relay.services.titles import TitleGenerator, TitleWorker

from conftest import FakeOllama, ollama_body


def _build(
    store: ChatStore,
    app_settings,
    transport: httpx.AsyncBaseTransport,
    *,
    with_titles: bool = False,
) -> Tuple[ChatTurnRelay, Optional[TitleWorker]]:
    registry = ProviderRegistry(CredentialStore(store), app_settings, transport=transport)
    settings_service = SettingsService(store)
    worker = TitleWorker(store, TitleGenerator(registry), settings_service) if with_titles else None
    relay = ChatTurnRelay(store, registry, ContextAssembler(), AuditLogger(store), settings_service, worker)
    return relay, worker


async def _run(relay: ChatTurnRelay, turn: ChatTurn) -> List[Dict[str, Any]]:
    prepared = await relay.prepare(turn)
    return [event async for event in relay.stream(prepared)]


def _terminals(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [e for e in events if "done" in e or "error" in e]


async def test_completed_turn_persists_exactly_what_was_streamed(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("Fo", "ur", ".", " ✓"), chunk_size=5)
    relay, _ = _build(store, app_settings, fake.transport)
    prompt = await store.create_system_prompt(name="terse", content="You are terse.")
    chat = await store.create_chat(model="old-model", system_prompt_id=prompt["id"])

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="2+2?"))

    assert events[0]["userMessageSaved"] is True
    deltas = "".join(e["content"] for e in events if "content" in e)
    assert deltas == "Four. ✓"
    assert _terminals(events) == [events[-1]]
    assert events[-1]["done"] is True

    messages = await store.fetch_messages(chat["id"])
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["id"] == events[0]["userMessageId"]
    assert messages[1]["id"] == events[-1]["messageId"]
    assert messages[1]["content"] == deltas
    assert messages[1]["model"] == "llama3"
    assert (await store.get_chat(chat["id"]))["model"] == "llama3"

    sent = fake.requests[0]["messages"]
    assert sent == [{"role": "system", "content": "You are terse."}, {"role": "user", "content": "2+2?"}]

    logs = await store.list_prompt_logs()
    assert len(logs) == 1
    assert logs[0]["error"] is None
    assert logs[0]["response"] == deltas
    assert logs[0]["context_window_size"] == 8192
    assert logs[0]["user_message"] == "2+2?"


async def test_user_message_saved_before_upstream_call(store: ChatStore, app_settings) -> None:
    order: List[str] = []
    fake = FakeOllama(ollama_body("ok"), on_stream=lambda: order.append("upstream"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")
    original = store.append_message

    async def recording(chat_id: str, **kwargs: Any) -> Dict[str, Any]:
        order.append(f"save:{kwargs['role']}")
        return await original(chat_id, **kwargs)

    with patch.object(store, "append_message", side_effect=recording):
        await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert order == ["save:user", "upstream", "save:assistant"]


async def test_history_is_sent_on_following_turn(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("4"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="2+2?"))
    await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="and 3+3?"))

    assert fake.requests[1]["messages"] == [
        {"role": "user", "content": "2+2?"},
        {"role": "assistant", "content": "4"},
        {"role": "user", "content": "and 3+3?"},
    ]


async def test_upstream_http_error_fails_turn(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(status_code=500)
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert len(_terminals(events)) == 1
    assert "500" in events[-1]["error"]
    messages = await store.fetch_messages(chat["id"])
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert "500" in messages[1]["content"]
    logs = await store.list_prompt_logs()
    assert len(logs) == 1
    assert logs[0]["error"]
    assert logs[0]["response"] is None


async def test_empty_response_fails_turn(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body())
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert events[-1] == {"error": EMPTY_RESPONSE_ERROR}
    assert len(_terminals(events)) == 1
    assert len(await store.fetch_messages(chat["id"])) == 2


async def test_error_payload_mid_stream_fails_turn(store: ChatStore, app_settings) -> None:
    body = ollama_body("partial ", done=False) + '{"error":"llama runner process has terminated"}\n'
    fake = FakeOllama(body)
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert {"content": "partial "} in events
    assert events[-1] == {"error": "llama runner process has terminated"}
    assert len(_terminals(events)) == 1
    stored = await store.fetch_messages(chat["id"])
    assert "terminated" in stored[-1]["content"]
    assert (await store.list_prompt_logs())[0]["error"] == "llama runner process has terminated"


async def test_idle_timeout_fails_turn(store: ChatStore, app_settings) -> None:
    await store.upsert_settings_rows([("settings.advanced.chunk_timeout_ms", "1000")])

    async def stalled() -> AsyncIterator[bytes]:
        yield (json.dumps({"message": {"content": "par"}, "done": False}) + "\n").encode()
        await asyncio.sleep(30)
        yield b""

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=stalled()))
    relay, _ = _build(store, app_settings, transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert events[1] == {"content": "par"}
    assert "No data received" in events[-1]["error"]
    assert len(_terminals(events)) == 1
    assert (await store.list_prompt_logs())[0]["error"]


async def test_cancel_after_first_delta_keeps_only_user_message(store: ChatStore, app_settings) -> None:
    release = asyncio.Event()

    async def never_finishes() -> AsyncIterator[bytes]:
        yield (json.dumps({"message": {"content": "Once upon"}, "done": False}) + "\n").encode()
        await release.wait()
        yield (json.dumps({"message": {"content": ""}, "done": True}) + "\n").encode()

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=never_finishes()))
    relay, _ = _build(store, app_settings, transport)
    chat = await store.create_chat(model="llama3")
    prepared = await relay.prepare(ChatTurn(chat_id=chat["id"], model="llama3", message="tell a story"))

    events = relay.stream(prepared)
    saved = await events.__anext__()
    first = await events.__anext__()
    await events.aclose()

    assert saved["userMessageSaved"] is True
    assert first == {"content": "Once upon"}
    assert prepared.state is TurnState.CANCELLED
    messages = await store.fetch_messages(chat["id"])
    assert [m["role"] for m in messages] == ["user"]
    assert await store.count_prompt_logs() == 0


async def test_missing_chat_rejected_before_persistence(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("x"))
    relay, _ = _build(store, app_settings, fake.transport)

    with pytest.raises(ChatNotFoundError):
        await relay.prepare(ChatTurn(chat_id="missing", model="llama3", message="hi"))
    assert fake.requests == []


async def test_unavailable_provider_rejected_before_persistence(store: ChatStore, app_settings) -> None:
    await store.upsert_provider("openai", api_key=None, models=["gpt-4o"])
    fake = FakeOllama(ollama_body("x"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="gpt-4o")

    with pytest.raises(ProviderUnavailableError):
        await relay.prepare(ChatTurn(chat_id=chat["id"], model="gpt-4o", message="hi"))

    assert await store.fetch_messages(chat["id"]) == []


async def test_user_message_save_failure_is_generic_error(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("x"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")
    prepared = await relay.prepare(ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    failing = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
    with patch.object(store, "append_message", failing):
        events = [event async for event in relay.stream(prepared)]

    assert events == [{"error": PERSISTENCE_ERROR_MESSAGE}]
    assert fake.requests == []


async def test_finish_save_failure_replaces_done_with_generic_error(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("Hel", "lo"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")
    prepared = await relay.prepare(ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    failing = AsyncMock(side_effect=aiosqlite.OperationalError("disk I/O error"))
    with patch.object(store, "touch_chat", failing):
        events = [event async for event in relay.stream(prepared)]

    assert [e["content"] for e in events if "content" in e] == ["Hel", "lo"]
    assert _terminals(events) == [{"error": PERSISTENCE_ERROR_MESSAGE}]
    assert events[-1] == {"error": PERSISTENCE_ERROR_MESSAGE}


async def test_title_generated_after_first_completed_turn(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("4"), completion="Simple Arithmetic")
    relay, worker = _build(store, app_settings, fake.transport, with_titles=True)
    assert worker is not None
    chat = await store.create_chat(model="llama3")

    await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="2+2?"))
    await worker.drain()
    await worker.stop()

    assert (await store.get_chat(chat["id"]))["title"] == "Simple Arithmetic"
    assert worker.completed == [chat["id"]]


async def test_failed_turn_does_not_trigger_title(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(status_code=503)
    relay, worker = _build(store, app_settings, fake.transport, with_titles=True)
    assert worker is not None
    chat = await store.create_chat(model="llama3")

    await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))
    await worker.drain()

    assert (await store.get_chat(chat["id"]))["title"] is None
    assert all(r.get("stream") is not False for r in fake.requests)


async def test_done_is_not_held_by_the_title_check(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("4"), completion="Simple Arithmetic")
    relay, worker = _build(store, app_settings, fake.transport, with_titles=True)
    assert worker is not None
    chat = await store.create_chat(model="llama3")
    release = asyncio.Event()
    count_messages = store.count_messages

    async def blocked_count(chat_id: str) -> int:
        await release.wait()
        return await count_messages(chat_id)

    with patch.object(store, "count_messages", side_effect=blocked_count):
        events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="2+2?"))

        assert events[-1]["done"] is True
        assert (await store.get_chat(chat["id"]))["title"] is None

        release.set()
        await worker.drain()
    await worker.stop()

    assert (await store.get_chat(chat["id"]))["title"] == "Simple Arithmetic"


async def test_failure_message_saved_even_when_audit_write_fails(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(status_code=500)
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    failing = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
    with patch.object(store, "insert_prompt_log", failing):
        events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert events[-1] == {"error": PERSISTENCE_ERROR_MESSAGE}
    messages = await store.fetch_messages(chat["id"])
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["content"].startswith("The response could not be generated:")
    assert "500" in messages[1]["content"]


async def test_whitespace_only_reply_streams_no_content(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("\n\n", " "))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert [e for e in events if "content" in e] == []
    assert events[-1] == {"error": EMPTY_RESPONSE_ERROR}


async def test_leading_whitespace_is_sent_with_first_visible_text(store: ChatStore, app_settings) -> None:
    fake = FakeOllama(ollama_body("\n\n", "Hi", "\n", "there"))
    relay, _ = _build(store, app_settings, fake.transport)
    chat = await store.create_chat(model="llama3")

    events = await _run(relay, ChatTurn(chat_id=chat["id"], model="llama3", message="hi"))

    assert [e["content"] for e in events if "content" in e] == ["\n\nHi", "\n", "there"]
    assert events[-1]["done"] is True
    messages = await store.fetch_messages(chat["id"])
    assert messages[1]["content"] == "\n\nHi\nthere"
