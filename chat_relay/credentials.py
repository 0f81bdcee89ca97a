from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .persistence import ChatStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    api_key: Optional[str]
    base_url: Optional[str]
    models: Tuple[str, ...] = ()
    enabled: bool = True


def _to_config(row: Dict[str, Any]) -> ProviderConfig:
    return ProviderConfig(
        name=row["name"],
        api_key=(row.get("api_key") or None),
        base_url=(row.get("base_url") or None),
        models=tuple(row.get("models") or ()),
        enabled=bool(row.get("enabled")),
    )


class CredentialStore:
    """Read-only access to provider credentials kept in the chat database."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    async def get_config(self, provider_name: str) -> Optional[ProviderConfig]:
        row = await self._store.get_provider(provider_name)
        return _to_config(row) if row else None

    async def get_key(self, provider_name: str) -> Optional[str]:
        config = await self.get_config(provider_name)
        return config.api_key if config else None

    async def get_base_url(self, provider_name: str) -> Optional[str]:
        config = await self.get_config(provider_name)
        return config.base_url if config else None

    async def enabled_configs(self) -> List[ProviderConfig]:
        rows = await self._store.list_providers(enabled_only=True)
        return [_to_config(row) for row in rows]
