from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import AppSettings
from ..credentials import CredentialStore, ProviderConfig
from ..errors import ProviderUnavailableError
from .adapter import WIRE_SPECS, Adapter
from .base import ProviderKind

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Resolve a model name to the adapter that serves it.

    Remote providers claim models through their configured model lists; any
    model no enabled provider claims belongs to the local Ollama server.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        settings: AppSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credentials = credentials
        self._settings = settings
        self._transport = transport

    async def model_table(self) -> Dict[str, ProviderConfig]:
        table: Dict[str, ProviderConfig] = {}
        for config in await self._credentials.enabled_configs():
            for model in config.models:
                table.setdefault(model, config)
        return table

    async def provider_for_model(self, model_name: str) -> Optional[str]:
        config = (await self.model_table()).get(model_name)
        return config.name if config else None

    async def resolve(
        self,
        model_name: str,
        *,
        chunk_timeout: Optional[float] = None,
        stream_timeout: Optional[float] = None,
    ) -> Adapter:
        chunk_timeout = chunk_timeout if chunk_timeout is not None else self._settings.chunk_timeout
        stream_timeout = stream_timeout if stream_timeout is not None else self._settings.stream_timeout

        config = (await self.model_table()).get(model_name)
        if config is None:
            return Adapter(
                kind=ProviderKind.OLLAMA,
                base_url=self._settings.ollama_base_url,
                chunk_timeout=chunk_timeout,
                stream_timeout=stream_timeout,
                connect_timeout=self._settings.connect_timeout,
                transport=self._transport,
            )

        try:
            kind = ProviderKind(config.name.lower())
        except ValueError as exc:
            raise ProviderUnavailableError(config.name, "unsupported provider") from exc

        logger.debug("Model %s resolved to provider %s", model_name, kind.value)
        return self.adapter_for(
            kind,
            api_key=config.api_key,
            base_url=config.base_url,
            chunk_timeout=chunk_timeout,
            stream_timeout=stream_timeout,
        )

    def adapter_for(
        self,
        kind: ProviderKind,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        chunk_timeout: Optional[float] = None,
        stream_timeout: Optional[float] = None,
    ) -> Adapter:
        spec = WIRE_SPECS[kind]
        if spec.requires_key and not api_key:
            raise ProviderUnavailableError(kind.value)
        return Adapter(
            kind=kind,
            base_url=base_url or spec.default_base_url,
            api_key=api_key,
            chunk_timeout=chunk_timeout if chunk_timeout is not None else self._settings.chunk_timeout,
            stream_timeout=stream_timeout if stream_timeout is not None else self._settings.stream_timeout,
            connect_timeout=self._settings.connect_timeout,
            transport=self._transport,
        )

    async def list_local_models(self) -> List[Dict[str, Any]]:
        timeout = httpx.Timeout(self._settings.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            resp = await client.get(f"{self._settings.ollama_base_url}/api/tags")
            resp.raise_for_status()
            data = resp.json()
        return list(data.get("models") or [])

    async def local_server_healthy(self) -> bool:
        try:
            await self.list_local_models()
            return True
        except Exception as exc:
            logger.debug("Ollama health check failed: %s", exc)
            return False
