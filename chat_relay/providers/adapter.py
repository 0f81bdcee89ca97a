from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Mapping, Optional

import httpx
from openai import AsyncOpenAI

from ..errors import StreamTimeoutError, UpstreamError
from . import codecs
from .base import CompletionRequest, ProviderKind, StreamChunk
from .lines import iter_lines

logger = logging.getLogger(__name__)

LineParser = Callable[[str, str], Optional[codecs.WireEvent]]


@dataclass(frozen=True)
class WireSpec:
    label: str
    default_base_url: str
    requires_key: bool
    url: Callable[[str, CompletionRequest], str]
    headers: Callable[[Optional[str]], Dict[str, str]]
    payload: Callable[[CompletionRequest], Dict[str, object]]
    parse_line: LineParser
    models_url: Callable[[str], str]
    openai_compatible: bool = False


WIRE_SPECS: Mapping[ProviderKind, WireSpec] = {
    ProviderKind.OLLAMA: WireSpec(
        label="Ollama",
        default_base_url="http://localhost:11434",
        requires_key=False,
        url=lambda base, _req: f"{base}/api/chat",
        headers=lambda _key: {"Content-Type": "application/json"},
        payload=codecs.build_ollama_payload,
        parse_line=codecs.parse_ollama_line,
        models_url=lambda base: f"{base}/api/tags",
    ),
    ProviderKind.OPENAI: WireSpec(
        label="OpenAI",
        default_base_url="https://api.openai.com/v1",
        requires_key=True,
        url=lambda base, _req: f"{base}/chat/completions",
        headers=codecs.openai_headers,
        payload=codecs.build_openai_payload,
        parse_line=codecs.parse_openai_line,
        models_url=lambda base: f"{base}/models",
        openai_compatible=True,
    ),
    ProviderKind.GROQ: WireSpec(
        label="Groq",
        default_base_url="https://api.groq.com/openai/v1",
        requires_key=True,
        url=lambda base, _req: f"{base}/chat/completions",
        headers=codecs.openai_headers,
        payload=codecs.build_openai_payload,
        parse_line=codecs.parse_openai_line,
        models_url=lambda base: f"{base}/models",
        openai_compatible=True,
    ),
    ProviderKind.LMSTUDIO: WireSpec(
        label="LM Studio",
        default_base_url="http://localhost:1234",
        requires_key=False,
        url=lambda base, _req: f"{base}/v1/chat/completions",
        headers=codecs.openai_headers,
        payload=codecs.build_openai_payload,
        parse_line=codecs.parse_openai_line,
        models_url=lambda base: f"{base}/v1/models",
        openai_compatible=True,
    ),
    ProviderKind.ANTHROPIC: WireSpec(
        label="Anthropic",
        default_base_url="https://api.anthropic.com/v1",
        requires_key=True,
        url=lambda base, _req: f"{base}/messages",
        headers=codecs.anthropic_headers,
        payload=codecs.build_anthropic_payload,
        parse_line=codecs.parse_anthropic_line,
        models_url=lambda base: f"{base}/models",
    ),
    ProviderKind.GOOGLE: WireSpec(
        label="Google AI",
        default_base_url="https://generativelanguage.googleapis.com/v1beta",
        requires_key=True,
        url=lambda base, req: f"{base}/models/{req.model}:streamGenerateContent?alt=sse",
        headers=codecs.google_headers,
        payload=codecs.build_google_payload,
        parse_line=codecs.parse_google_line,
        models_url=lambda base: f"{base}/models",
    ),
}


@dataclass(frozen=True)
class Adapter:
    """One backend, resolved for a single turn."""

    kind: ProviderKind
    base_url: str
    api_key: Optional[str] = None
    chunk_timeout: Optional[float] = 30.0
    stream_timeout: Optional[float] = 120.0
    connect_timeout: float = 10.0
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, compare=False, repr=False)

    @property
    def spec(self) -> WireSpec:
        return WIRE_SPECS[self.kind]

    @property
    def name(self) -> str:
        return self.kind.value

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.chunk_timeout, connect=self.connect_timeout)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Yield content deltas followed by exactly one ``done`` chunk."""
        spec = self.spec
        base = self.base_url.rstrip("/")
        url = spec.url(base, request)
        payload = spec.payload(request)
        logger.info(
            "Streaming %d message(s) to %s model %s (num_ctx=%d)",
            len(request.messages),
            spec.label,
            request.model,
            request.context_window,
        )
        async with self._client() as client:
            try:
                async with client.stream("POST", url, json=payload, headers=spec.headers(self.api_key)) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise UpstreamError(
                            f"{spec.label} API error: {response.status_code} - {body[:500]}",
                            provider=self.name,
                            http_status=response.status_code,
                        )
                    lines = iter_lines(
                        response.aiter_text(),
                        idle_timeout=self.chunk_timeout,
                        total_timeout=self.stream_timeout,
                        provider=self.name,
                    )
                    async for line in lines:
                        event = spec.parse_line(line, self.name)
                        if event is None:
                            continue
                        if event.error:
                            yield StreamChunk(done=True, error=event.error)
                            return
                        if event.content:
                            yield StreamChunk(content=event.content)
                        if event.done:
                            break
            except httpx.TimeoutException as exc:
                raise StreamTimeoutError(f"{spec.label} request timed out: {exc}", provider=self.name) from exc
            except httpx.HTTPError as exc:
                raise UpstreamError(f"{spec.label} connection failed: {exc}", provider=self.name) from exc
        yield StreamChunk(done=True)

    async def check_connection(self) -> None:
        """List the provider's models; raise ``UpstreamError`` if the call is refused."""
        spec = self.spec
        url = spec.models_url(self.base_url.rstrip("/"))
        async with self._client() as client:
            try:
                resp = await client.get(url, headers=spec.headers(self.api_key))
            except httpx.TimeoutException as exc:
                raise StreamTimeoutError(f"{spec.label} request timed out: {exc}", provider=self.name) from exc
            except httpx.HTTPError as exc:
                raise UpstreamError(f"{spec.label} connection failed: {exc}", provider=self.name) from exc
        if resp.status_code >= 400:
            raise UpstreamError(
                f"{spec.label} API error: {resp.status_code} - {resp.text[:500]}",
                provider=self.name,
                http_status=resp.status_code,
            )
        logger.info("Connection check to %s succeeded", spec.label)

    async def complete(self, request: CompletionRequest) -> str:
        """Single non-streamed completion, used for short auxiliary prompts."""
        spec = self.spec
        base = self.base_url.rstrip("/")
        if self.kind is ProviderKind.OLLAMA:
            payload = codecs.build_ollama_payload(request, stream=False)
            async with self._client() as client:
                try:
                    resp = await client.post(f"{base}/api/chat", json=payload, timeout=self.stream_timeout)
                except httpx.HTTPError as exc:
                    raise UpstreamError(f"Ollama request failed: {exc}", provider=self.name) from exc
            if resp.status_code >= 400:
                raise UpstreamError(
                    f"Ollama request failed: {resp.status_code} - {resp.text[:500]}",
                    provider=self.name,
                    http_status=resp.status_code,
                )
            data = resp.json()
            return str((data.get("message") or {}).get("content") or "")

        if spec.openai_compatible:
            api_base = f"{base}/v1" if self.kind is ProviderKind.LMSTUDIO else base
            http_client = httpx.AsyncClient(transport=self.transport) if self.transport else None
            client = AsyncOpenAI(
                base_url=api_base,
                api_key=self.api_key or "not-needed",
                timeout=self.stream_timeout,
                http_client=http_client,
            )
            args = codecs.build_openai_payload(request, stream=False)
            args.pop("stream", None)
            try:
                response = await client.chat.completions.create(**args)
            except Exception as exc:
                raise UpstreamError(f"{spec.label} completion failed: {exc}", provider=self.name) from exc
            finally:
                await client.close()
            if not response or not getattr(response, "choices", None):
                return ""
            message = getattr(response.choices[0], "message", None)
            return (getattr(message, "content", "") or "").strip()

        parts = []
        async for chunk in self.stream(request):
            if chunk.error:
                raise UpstreamError(chunk.error, provider=self.name)
            if chunk.content:
                parts.append(chunk.content)
            if chunk.done:
                break
        return "".join(parts)
