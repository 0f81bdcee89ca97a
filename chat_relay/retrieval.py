from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievedSnippet:
    content: str
    filename: str
    score: float
    collection_id: Optional[str] = None


class RetrievalService(Protocol):
    async def search(self, collection_id: str, query: str, top_k: int) -> List[RetrievedSnippet]:
        ...


class HttpRetrievalService:
    """Client for the document retrieval service (embedding search per collection)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def search(self, collection_id: str, query: str, top_k: int) -> List[RetrievedSnippet]:
        url = f"{self.base_url}/collections/{collection_id}/search"
        timeout = httpx.Timeout(self._timeout, connect=min(5.0, self._timeout))
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            resp = await client.post(url, json={"query": query, "topK": top_k})
            resp.raise_for_status()
            data = resp.json()
        rows: Sequence[Dict[str, Any]] = data.get("results", []) if isinstance(data, dict) else data
        snippets: List[RetrievedSnippet] = []
        for row in rows:
            content = str(row.get("content") or "").strip()
            if not content:
                continue
            snippets.append(
                RetrievedSnippet(
                    content=content,
                    filename=str(row.get("filename") or "unknown"),
                    score=float(row.get("score") or 0.0),
                    collection_id=collection_id,
                )
            )
        return snippets


class RetrievalGateway:
    """Fan a query out to several collections and keep the best-scoring snippets."""

    def __init__(self, service: RetrievalService, *, default_top_k: int = 5) -> None:
        self._service = service
        self.default_top_k = default_top_k

    async def search(
        self,
        collection_ids: Sequence[str],
        query: str,
        top_k: Optional[int] = None,
    ) -> List[RetrievedSnippet]:
        ids = [cid for cid in dict.fromkeys(collection_ids) if cid]
        if not ids or not query.strip():
            return []
        limit = top_k or self.default_top_k
        results = await asyncio.gather(
            *(self._service.search(cid, query, limit) for cid in ids),
            return_exceptions=True,
        )
        merged: List[RetrievedSnippet] = []
        for cid, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning("Retrieval from collection %s failed: %s", cid, result)
                continue
            merged.extend(result)
        merged.sort(key=lambda snippet: snippet.score, reverse=True)
        return merged[:limit]
