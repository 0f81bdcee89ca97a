"""Conversation title generation, triggered in the background after completed turns."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..persistence import ChatStore
from ..providers.base import CompletionRequest, PromptMessage, SamplingOptions
from ..providers.registry import ProviderRegistry
from ..token_utils import DEFAULT_CONTEXT_WINDOW, estimate_tokens
from .settings import SettingsService, TitleGenerationSettings

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "New Conversation"
_CONTEXT_MESSAGES = 4
_CONTEXT_CHARS = 2000
_TITLE_MAX_TOKENS = 64
_TITLE_PREFIX_RE = re.compile(r"^title:\s*", re.IGNORECASE)


@dataclass(frozen=True)
class TitleTrigger:
    chat_id: str
    chat_model: str
    reason: str  # "initial" or "regenerate"
    message_count: int


def title_trigger(
    chat_id: str,
    chat_model: str,
    *,
    message_count: int,
    has_title: bool,
    settings: TitleGenerationSettings,
) -> Optional[TitleTrigger]:
    if not settings.enabled:
        return None
    if not has_title and message_count == settings.trigger_after_messages:
        return TitleTrigger(chat_id, chat_model, "initial", message_count)
    if settings.regenerate_after_messages > 0 and message_count == settings.regenerate_after_messages:
        return TitleTrigger(chat_id, chat_model, "regenerate", message_count)
    return None


def clean_title(raw: str, max_length: int) -> str:
    title = raw.strip().split("\n", 1)[0].strip().strip("\"'").strip()
    title = _TITLE_PREFIX_RE.sub("", title).strip().strip("\"'").strip()
    title = title[:max_length].strip()
    return title or FALLBACK_TITLE


def render_conversation(messages: Sequence[Dict[str, Any]]) -> str:
    lines = [f"{m.get('role')}: {m.get('content')}" for m in messages[:_CONTEXT_MESSAGES]]
    return "\n".join(lines)[:_CONTEXT_CHARS]


class TitleGenerator:
    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    async def choose_model(self, chat_model: str, settings: TitleGenerationSettings) -> str:
        if settings.use_current_chat_model:
            return chat_model
        if settings.specific_model:
            return settings.specific_model
        try:
            local_models = await self._registry.list_local_models()
        except Exception as exc:
            logger.warning("Could not list local models for title generation: %s", exc)
            return chat_model
        if local_models:
            return str(local_models[0].get("name") or chat_model)
        return chat_model

    async def generate(
        self,
        messages: Sequence[Dict[str, Any]],
        chat_model: str,
        settings: TitleGenerationSettings,
    ) -> str:
        model = await self.choose_model(chat_model, settings)
        prompt = settings.prompt.replace("{conversation}", render_conversation(messages))
        request = CompletionRequest(
            model=model,
            messages=(PromptMessage(role="user", content=prompt),),
            context_window=DEFAULT_CONTEXT_WINDOW,
            estimated_tokens=estimate_tokens(prompt),
            options=SamplingOptions(num_predict=_TITLE_MAX_TOKENS),
        )
        adapter = await self._registry.resolve(model)
        raw = await adapter.complete(request)
        return clean_title(raw, settings.max_length)


@dataclass(frozen=True)
class TitleRequest:
    chat_id: str
    chat_model: str
    has_title: bool


class TitleWorker:
    """Background queue that generates titles without blocking chat responses.

    ``submit`` only enqueues; the message count and trigger check run on the
    worker task.
    """

    def __init__(self, store: ChatStore, generator: TitleGenerator, settings: SettingsService) -> None:
        self._store = store
        self._generator = generator
        self._settings = settings
        self._queue: "asyncio.Queue[TitleRequest]" = asyncio.Queue()
        self._worker_task: Optional["asyncio.Task[None]"] = None
        self.completed: List[str] = []

    def submit(self, chat_id: str, chat_model: str, *, has_title: bool) -> None:
        self._queue.put_nowait(TitleRequest(chat_id, chat_model, has_title))
        self._ensure_worker_running()

    def _ensure_worker_running(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._process(request)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Title generation failed for chat %s", request.chat_id)
            finally:
                self._queue.task_done()

    async def _process(self, request: TitleRequest) -> None:
        settings = await self._settings.get_settings()
        count = await self._store.count_messages(request.chat_id)
        trigger = title_trigger(
            request.chat_id,
            request.chat_model,
            message_count=count,
            has_title=request.has_title,
            settings=settings.title_generation,
        )
        if trigger is None:
            return
        logger.info(
            "Generating %s title for chat %s at %d messages",
            trigger.reason,
            trigger.chat_id,
            trigger.message_count,
        )
        messages = await self._store.fetch_messages(trigger.chat_id)
        if not messages:
            return
        title = await self._generator.generate(messages, trigger.chat_model, settings.title_generation)
        await self._store.set_chat_title(trigger.chat_id, title)
        self.completed.append(trigger.chat_id)
        logger.info("Chat %s titled %r", trigger.chat_id, title)

    async def drain(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
