"""Wire formats for each backend.

Every parser takes one line of the upstream body and returns a
``WireEvent`` or ``None`` when the line carries nothing for the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import UpstreamError
from .base import CompletionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireEvent:
    content: str = ""
    done: bool = False
    error: Optional[str] = None


def _load_object(text: str, provider: str) -> Optional[Dict[str, Any]]:
    if not text.startswith("{"):
        logger.debug("Skipping non-data line from %s: %s", provider, text[:120])
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"Malformed chunk from {provider}: {text[:200]}", provider=provider) from exc
    if not isinstance(payload, dict):
        return None
    return payload


def _error_text(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("message") or raw.get("type") or raw)
    return str(raw)


def _sse_data(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].strip()


# Parsers

def parse_ollama_line(line: str, provider: str = "ollama") -> Optional[WireEvent]:
    stripped = line.strip()
    if not stripped:
        return None
    payload = _load_object(stripped, provider)
    if payload is None:
        return None
    if payload.get("error"):
        return WireEvent(error=_error_text(payload["error"]))
    message = payload.get("message") or {}
    content = message.get("content") or ""
    return WireEvent(content=str(content), done=bool(payload.get("done")))


def parse_openai_line(line: str, provider: str = "openai") -> Optional[WireEvent]:
    data = _sse_data(line)
    if not data:
        return None
    if data == "[DONE]":
        return WireEvent(done=True)
    payload = _load_object(data, provider)
    if payload is None:
        return None
    if payload.get("error"):
        return WireEvent(error=_error_text(payload["error"]))
    choices = payload.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content") or ""
    return WireEvent(content=str(content))


def parse_anthropic_line(line: str, provider: str = "anthropic") -> Optional[WireEvent]:
    data = _sse_data(line)
    if not data:
        return None
    payload = _load_object(data, provider)
    if payload is None:
        return None
    kind = payload.get("type")
    if kind == "content_block_delta":
        delta = payload.get("delta") or {}
        text = delta.get("text") or ""
        return WireEvent(content=str(text)) if text else None
    if kind == "message_stop":
        return WireEvent(done=True)
    if kind == "error":
        return WireEvent(error=_error_text(payload.get("error")))
    return None


def parse_google_line(line: str, provider: str = "google") -> Optional[WireEvent]:
    stripped = line.strip()
    if stripped.startswith("data:"):
        stripped = stripped[5:].strip()
    if not stripped:
        return None
    payload = _load_object(stripped, provider)
    if payload is None:
        return None
    if payload.get("error"):
        return WireEvent(error=_error_text(payload["error"]))
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = parts[0].get("text") if parts else ""
    return WireEvent(content=str(text or ""))


# Request builders

def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def build_ollama_payload(request: CompletionRequest, *, stream: bool = True) -> Dict[str, Any]:
    opts = request.options
    options = _drop_none(
        {
            "num_ctx": request.context_window,
            "temperature": opts.temperature,
            "top_p": opts.top_p,
            "top_k": opts.top_k,
            "num_predict": opts.num_predict,
            "stop": list(opts.stop) if opts.stop else None,
        }
    )
    return {
        "model": request.model,
        "messages": request.message_dicts(),
        "stream": stream,
        "options": options,
    }


def build_openai_payload(request: CompletionRequest, *, stream: bool = True) -> Dict[str, Any]:
    opts = request.options
    return _drop_none(
        {
            "model": request.model,
            "messages": request.message_dicts(),
            "stream": stream,
            "temperature": opts.temperature,
            "top_p": opts.top_p,
            "max_tokens": opts.num_predict,
            "stop": list(opts.stop) if opts.stop else None,
        }
    )


def build_anthropic_payload(request: CompletionRequest) -> Dict[str, Any]:
    opts = request.options
    messages = [
        {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
        for m in request.conversation()
    ]
    return _drop_none(
        {
            "model": request.model,
            "messages": messages,
            "system": request.system_text() or None,
            "max_tokens": opts.num_predict or 4096,
            "temperature": opts.temperature,
            "top_p": opts.top_p,
            "stop_sequences": list(opts.stop) if opts.stop else None,
            "stream": True,
        }
    )


def build_google_payload(request: CompletionRequest) -> Dict[str, Any]:
    opts = request.options
    contents: List[Dict[str, Any]] = [
        {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
        for m in request.conversation()
    ]
    payload: Dict[str, Any] = {
        "contents": contents,
        "generationConfig": _drop_none(
            {
                "temperature": opts.temperature,
                "topP": opts.top_p,
                "topK": opts.top_k,
                "maxOutputTokens": opts.num_predict,
                "stopSequences": list(opts.stop) if opts.stop else None,
            }
        ),
    }
    system_text = request.system_text()
    if system_text:
        payload["systemInstruction"] = {"parts": [{"text": system_text}]}
    return payload


def openai_headers(api_key: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def anthropic_headers(api_key: Optional[str]) -> Dict[str, str]:
    return {
        "x-api-key": api_key or "",
        "anthropic-version": "2023-06-01",
        "content-type": "application/json",
    }


def google_headers(api_key: Optional[str]) -> Dict[str, str]:
    return {"Content-Type": "application/json", "x-goog-api-key": api_key or ""}

