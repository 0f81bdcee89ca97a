"""Per-turn streaming relay: persist, assemble, stream, finish in exactly one terminal state."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Tuple, TypeVar

from ..errors import ChatNotFoundError, PersistenceError, UpstreamError
from ..persistence import ChatStore
from ..providers.adapter import Adapter
from ..providers.base import CompletionRequest, PromptMessage, SamplingOptions
from ..providers.registry import ProviderRegistry
from ..token_utils import DEFAULT_CONTEXT_WINDOW, estimate_tokens
from .audit import AuditLogEntry, AuditLogger
from .context import AssembledContext, ContextAssembler
from .settings import ChatSettings, SettingsService
from .titles import TitleWorker

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERSISTENCE_ERROR_MESSAGE = "Internal error while saving the conversation"
EMPTY_RESPONSE_ERROR = "Empty response from model"
FAILED_TURN_TEMPLATE = "The response could not be generated: {error}"


class TurnState(str, Enum):
    PENDING = "pending"
    USER_SAVED = "user_saved"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ChatTurn:
    chat_id: str
    model: str
    message: str
    collection_ids: Tuple[str, ...] = ()
    options: Optional[SamplingOptions] = None


@dataclass
class PreparedTurn:
    turn: ChatTurn
    chat: Dict[str, Any]
    adapter: Adapter
    history: List[Dict[str, Any]]
    settings: ChatSettings
    state: TurnState = TurnState.PENDING
    user_message_id: Optional[str] = None
    response_parts: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ChatTurnRelay:
    """Run one chat turn and yield its wire events.

    ``prepare`` raises configuration errors before anything is stored.
    ``stream`` then yields ``userMessageSaved``, content deltas and a single
    terminal event (``done`` or ``error``).
    """

    def __init__(
        self,
        store: ChatStore,
        registry: ProviderRegistry,
        assembler: ContextAssembler,
        audit: AuditLogger,
        settings: SettingsService,
        titles: Optional[TitleWorker] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._assembler = assembler
        self._audit = audit
        self._settings = settings
        self._titles = titles

    async def prepare(self, turn: ChatTurn) -> PreparedTurn:
        chat = await self._store.get_chat(turn.chat_id)
        if chat is None:
            raise ChatNotFoundError(turn.chat_id)
        settings = await self._settings.get_settings()
        adapter = await self._registry.resolve(
            turn.model,
            chunk_timeout=settings.advanced.chunk_timeout_ms / 1000.0,
            stream_timeout=settings.advanced.stream_timeout_ms / 1000.0,
        )
        history = await self._store.fetch_messages(turn.chat_id)
        return PreparedTurn(turn=turn, chat=chat, adapter=adapter, history=history, settings=settings)

    async def stream(self, prepared: PreparedTurn) -> AsyncIterator[Dict[str, Any]]:
        turn = prepared.turn
        try:
            user_message = await self._persist(
                "save user message",
                self._store.append_message(turn.chat_id, role="user", content=turn.message),
            )
        except PersistenceError:
            logger.exception("Failed to save user message for chat %s", turn.chat_id)
            prepared.state = TurnState.FAILED
            yield {"error": PERSISTENCE_ERROR_MESSAGE}
            return
        prepared.user_message_id = user_message["id"]
        prepared.state = TurnState.USER_SAVED
        yield {"userMessageSaved": True, "userMessageId": user_message["id"]}

        started = time.perf_counter()
        context: Optional[AssembledContext] = None
        try:
            context = await self._assemble(prepared)
            prepared.state = TurnState.STREAMING
            upstream = prepared.adapter.stream(context.request)
            visible = False
            held: List[str] = []
            try:
                async for chunk in upstream:
                    if chunk.error:
                        prepared.error = chunk.error
                        break
                    if chunk.content:
                        prepared.response_parts.append(chunk.content)
                        if not visible and not chunk.content.strip():
                            # leading whitespace is released with the first visible text
                            held.append(chunk.content)
                        else:
                            visible = True
                            yield {"content": "".join(held) + chunk.content}
                            held.clear()
                    if chunk.done:
                        break
            finally:
                await upstream.aclose()
        except (GeneratorExit, asyncio.CancelledError):
            prepared.state = TurnState.CANCELLED
            logger.info(
                "Turn cancelled for chat %s after %d delta(s); no assistant message stored",
                turn.chat_id,
                len(prepared.response_parts),
            )
            raise
        except UpstreamError as exc:
            logger.warning("Upstream failure for chat %s via %s: %s", turn.chat_id, prepared.adapter.name, exc.message)
            prepared.error = exc.message
        except Exception as exc:
            logger.exception("Unexpected failure while streaming chat %s", turn.chat_id)
            prepared.error = f"Unexpected error: {exc}"

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response = "".join(prepared.response_parts)
        if prepared.error is None and not response.strip():
            prepared.error = EMPTY_RESPONSE_ERROR

        if prepared.error is None:
            prepared.state = TurnState.COMPLETED
            terminal = await self._finish_completed(prepared, context, response, elapsed_ms)
        else:
            prepared.state = TurnState.FAILED
            terminal = await self._finish_failed(prepared, context, elapsed_ms)
        logger.info(
            "Turn for chat %s ended %s in %d ms (%d chars)",
            turn.chat_id,
            prepared.state.value,
            elapsed_ms,
            len(response),
        )
        if prepared.state is TurnState.COMPLETED and "done" in terminal and self._titles is not None:
            self._titles.submit(prepared.turn.chat_id, prepared.turn.model, has_title=bool(prepared.chat.get("title")))
        yield terminal

    async def _assemble(self, prepared: PreparedTurn) -> AssembledContext:
        settings = prepared.settings
        defaults = SamplingOptions(
            temperature=settings.model.temperature,
            top_p=settings.model.top_p,
        )
        return await self._assembler.assemble(
            model=prepared.turn.model,
            history=prepared.history,
            user_text=prepared.turn.message,
            system_prompt=prepared.chat.get("system_prompt"),
            collection_ids=prepared.turn.collection_ids,
            options=defaults.merged(prepared.turn.options),
            fixed_context_window=settings.fixed_context_window(),
        )

    def _audit_entry(
        self,
        prepared: PreparedTurn,
        context: Optional[AssembledContext],
        elapsed_ms: int,
        *,
        response: Optional[str] = None,
        error: Optional[str] = None,
    ) -> AuditLogEntry:
        if context is None:
            # assembly failed before a request existed
            request = CompletionRequest(
                model=prepared.turn.model,
                messages=(PromptMessage(role="user", content=prepared.turn.message),),
                context_window=DEFAULT_CONTEXT_WINDOW,
                estimated_tokens=estimate_tokens(prepared.turn.message),
            )
            context = AssembledContext(request=request, rag_context=None, collection_ids=prepared.turn.collection_ids)
        return AuditLogEntry(
            chat_id=prepared.turn.chat_id,
            model=prepared.turn.model,
            request=context.request,
            user_message=prepared.turn.message,
            response_time_ms=elapsed_ms,
            rag_context=context.rag_context,
            collection_ids=context.collection_ids,
            response=response,
            error=error,
        )

    async def _persist(self, action: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except Exception as exc:
            raise PersistenceError(f"Failed to {action}: {exc}") from exc

    async def _finish_completed(
        self,
        prepared: PreparedTurn,
        context: Optional[AssembledContext],
        response: str,
        elapsed_ms: int,
    ) -> Dict[str, Any]:
        chat_id = prepared.turn.chat_id
        try:
            assistant = await self._persist(
                "save assistant message",
                self._store.append_message(chat_id, role="assistant", content=response, model=prepared.turn.model),
            )
            await self._persist("touch chat", self._store.touch_chat(chat_id, model=prepared.turn.model))
            await self._persist(
                "record audit log",
                self._audit.record(self._audit_entry(prepared, context, elapsed_ms, response=response)),
            )
        except PersistenceError:
            logger.exception("Failed to persist completed turn for chat %s", chat_id)
            return {"error": PERSISTENCE_ERROR_MESSAGE}
        return {"done": True, "messageId": assistant["id"]}

    async def _finish_failed(
        self,
        prepared: PreparedTurn,
        context: Optional[AssembledContext],
        elapsed_ms: int,
    ) -> Dict[str, Any]:
        chat_id = prepared.turn.chat_id
        error = prepared.error or EMPTY_RESPONSE_ERROR
        persisted = True
        # the audit row and the failure message are written independently
        try:
            await self._persist(
                "record audit log",
                self._audit.record(self._audit_entry(prepared, context, elapsed_ms, error=error)),
            )
        except PersistenceError:
            logger.exception("Failed to record audit log for failed turn in chat %s", chat_id)
            persisted = False
        try:
            await self._persist(
                "save failure message",
                self._store.append_message(
                    chat_id,
                    role="assistant",
                    content=FAILED_TURN_TEMPLATE.format(error=error),
                    model=prepared.turn.model,
                ),
            )
        except PersistenceError:
            logger.exception("Failed to save failure message for chat %s", chat_id)
            persisted = False
        if not persisted:
            return {"error": PERSISTENCE_ERROR_MESSAGE}
        return {"error": error}
