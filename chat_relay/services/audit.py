from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..persistence import ChatStore
from ..providers.base import CompletionRequest
from ..token_utils import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditLogEntry:
    chat_id: Optional[str]
    model: str
    request: CompletionRequest
    user_message: str
    response_time_ms: int
    rag_context: Optional[str] = None
    collection_ids: Tuple[str, ...] = field(default_factory=tuple)
    response: Optional[str] = None
    error: Optional[str] = None

    @property
    def response_tokens(self) -> Optional[int]:
        return estimate_tokens(self.response) if self.response else None

    def to_row(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "model": self.model,
            "messages": json.dumps(self.request.serialize(), ensure_ascii=False),
            "rag_context": self.rag_context,
            "collection_ids": json.dumps(list(self.collection_ids)) if self.collection_ids else None,
            "estimated_tokens": self.request.estimated_tokens,
            "context_window_size": self.request.context_window,
            "response_tokens": self.response_tokens,
            "response": self.response,
            "response_time": self.response_time_ms,
            "error": self.error,
            "user_message": self.user_message,
        }


class AuditLogger:
    def __init__(self, store: ChatStore) -> None:
        self._store = store

    async def record(self, entry: AuditLogEntry) -> str:
        log_id = await self._store.insert_prompt_log(entry.to_row())
        logger.debug(
            "Prompt log %s written for chat %s (error=%s, %d ms)",
            log_id,
            entry.chat_id,
            bool(entry.error),
            entry.response_time_ms,
        )
        return log_id


def decode_log_row(row: Dict[str, Any]) -> Dict[str, Any]:
    decoded = dict(row)
    for key in ("messages", "collection_ids"):
        raw = decoded.get(key)
        if isinstance(raw, str) and raw:
            try:
                decoded[key] = json.loads(raw)
            except json.JSONDecodeError:
                pass
    return decoded
