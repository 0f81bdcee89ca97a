from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from ..dependencies import Services, get_services
from ..errors import ChatNotFoundError, ConfigurationError, ProviderUnavailableError
from ..schemas import ChatStreamRequest
from ..services.relay import ChatTurn
from .helpers import json_line

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat/stream")
async def chat_stream(req: ChatStreamRequest, services: Services = Depends(get_services)):
    """
    Run one chat turn and stream its events back as newline-delimited JSON.
    """
    turn = ChatTurn(
        chat_id=req.chat_id,
        model=req.model,
        message=req.message,
        collection_ids=tuple(req.collection_ids),
        options=req.options.to_sampling() if req.options else None,
    )
    try:
        prepared = await services.relay.prepare(turn)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except ProviderUnavailableError as exc:
        logger.warning("Rejected turn for chat %s: %s", req.chat_id, exc.message)
        raise HTTPException(status_code=503, detail=exc.message)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    async def _event_stream():
        events = services.relay.stream(prepared)
        try:
            async for event in events:
                yield json_line(event)
        finally:
            await events.aclose()

    return StreamingResponse(_event_stream(), media_type="application/x-ndjson")
