from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..providers.base import CompletionRequest, PromptMessage, SamplingOptions
from ..retrieval import RetrievalGateway, RetrievedSnippet
from ..token_utils import estimate_messages_tokens, select_context_window

logger = logging.getLogger(__name__)

RAG_INSTRUCTION = (
    "Use the context above to answer the user's question when it is relevant. "
    "If the context does not contain the answer, answer from your general knowledge."
)


@dataclass(frozen=True)
class AssembledContext:
    request: CompletionRequest
    rag_context: Optional[str]
    collection_ids: Tuple[str, ...]
    snippets: Tuple[RetrievedSnippet, ...] = ()


def render_snippets(snippets: Sequence[RetrievedSnippet]) -> str:
    blocks: List[str] = []
    for idx, snippet in enumerate(snippets, start=1):
        blocks.append(f"[{idx}] Source: {snippet.filename}\n{snippet.content}")
    body = "\n\n".join(blocks)
    return f"Relevant context from the knowledge base:\n\n{body}\n\n{RAG_INSTRUCTION}"


class ContextAssembler:
    """Build the model input for one turn.

    Order: configured system prompt, retrieved context, stored history, new
    user message. The context window comes from the chars/4 estimate unless a
    fixed window is configured.
    """

    def __init__(self, retrieval: Optional[RetrievalGateway] = None, *, top_k: int = 5) -> None:
        self._retrieval = retrieval
        self._top_k = top_k

    async def retrieve(self, query: str, collection_ids: Sequence[str]) -> List[RetrievedSnippet]:
        if not collection_ids:
            return []
        if self._retrieval is None:
            logger.warning("Collections %s requested but no retrieval service is configured", list(collection_ids))
            return []
        try:
            return await self._retrieval.search(collection_ids, query, self._top_k)
        except Exception as exc:
            logger.warning("Retrieval failed, continuing without context: %s", exc)
            return []

    async def assemble(
        self,
        *,
        model: str,
        history: Sequence[Dict[str, Any]],
        user_text: str,
        system_prompt: Optional[str] = None,
        collection_ids: Sequence[str] = (),
        options: Optional[SamplingOptions] = None,
        fixed_context_window: Optional[int] = None,
    ) -> AssembledContext:
        messages: List[PromptMessage] = []
        if system_prompt:
            messages.append(PromptMessage(role="system", content=system_prompt))

        snippets = await self.retrieve(user_text, collection_ids)
        rag_context: Optional[str] = None
        if snippets:
            rag_context = render_snippets(snippets)
            messages.append(PromptMessage(role="system", content=rag_context))

        for entry in history:
            messages.append(PromptMessage(role=str(entry["role"]), content=str(entry["content"])))
        messages.append(PromptMessage(role="user", content=user_text))

        estimated = estimate_messages_tokens(m.as_dict() for m in messages)
        window = fixed_context_window or select_context_window(estimated)
        logger.info(
            "Assembled %d message(s) (history=%d, system_prompt=%s, snippets=%d) ~%d tokens, num_ctx=%d",
            len(messages),
            len(history),
            bool(system_prompt),
            len(snippets),
            estimated,
            window,
        )

        request = CompletionRequest(
            model=model,
            messages=tuple(messages),
            context_window=window,
            estimated_tokens=estimated,
            options=options or SamplingOptions(),
        )
        return AssembledContext(
            request=request,
            rag_context=rag_context,
            collection_ids=tuple(collection_ids),
            snippets=tuple(snippets),
        )
