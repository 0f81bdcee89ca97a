"""Shared fixtures: temporary SQLite store, settings and fake upstream servers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from chat_relay.config import AppSettings
from chat_relay.persistence import ChatStore


def make_settings(tmp_path: Path, **overrides: Any) -> AppSettings:
    values: Dict[str, Any] = {
        "data_dir": tmp_path,
        "db_path": tmp_path / "chat.db",
        "ollama_base_url": "http://ollama.test",
        "retrieval_base_url": None,
        "retrieval_timeout": 5.0,
        "rag_top_k": 5,
        "stream_timeout": 10.0,
        "chunk_timeout": 5.0,
        "connect_timeout": 5.0,
        "frontend_origin": "http://localhost:5173",
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return AppSettings(**values)


async def byte_stream(pieces: Iterable[bytes]) -> AsyncIterator[bytes]:
    for piece in pieces:
        yield piece


def split_bytes(text: str, size: int) -> List[bytes]:
    """Cut a body into fixed-size byte pieces so lines straddle read boundaries."""
    raw = text.encode("utf-8")
    return [raw[i : i + size] for i in range(0, len(raw), size)]


def ndjson(*payloads: Dict[str, Any]) -> str:
    return "".join(json.dumps(p) + "\n" for p in payloads)


def ollama_body(*deltas: str, done: bool = True) -> str:
    payloads: List[Dict[str, Any]] = [
        {"model": "llama3", "message": {"role": "assistant", "content": d}, "done": False} for d in deltas
    ]
    if done:
        payloads.append({"model": "llama3", "message": {"role": "assistant", "content": ""}, "done": True})
    return ndjson(*payloads)


class FakeOllama:
    """MockTransport handler that plays back a streamed body and answers non-streamed calls."""

    def __init__(
        self,
        body: str = "",
        *,
        chunk_size: int = 7,
        status_code: int = 200,
        completion: str = "Simple Arithmetic",
        models: Optional[List[str]] = None,
        on_stream: Optional[Callable[[], None]] = None,
    ) -> None:
        self.body = body
        self.chunk_size = chunk_size
        self.status_code = status_code
        self.completion = completion
        self.models = models if models is not None else ["llama3:latest"]
        self.on_stream = on_stream
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": name, "size": 1} for name in self.models]})
        payload = json.loads(request.content)
        self.requests.append(payload)
        if payload.get("stream") is False:
            return httpx.Response(200, json={"message": {"role": "assistant", "content": self.completion}, "done": True})
        if self.on_stream is not None:
            self.on_stream()
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="model exploded")
        return httpx.Response(self.status_code, content=byte_stream(split_bytes(self.body, self.chunk_size)))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def app_settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)


@pytest.fixture
async def store(tmp_path: Path) -> ChatStore:
    chat_store = ChatStore(tmp_path / "chat.db")
    await chat_store.init()
    return chat_store
