from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..dependencies import Services, get_services
from .helpers import format_log_row, format_model_stats_row

router = APIRouter()


@router.get("/logs")
async def list_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    chat_id: Optional[str] = Query(None, alias="chatId"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    rows = await services.store.list_prompt_logs(limit=limit, offset=offset, chat_id=chat_id)
    total = await services.store.count_prompt_logs(chat_id)
    return {
        "logs": [format_log_row(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/logs/stats/summary")
async def log_stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    stats = await services.store.prompt_log_stats()
    total = int(stats["total_logs"])
    return {
        "totalLogs": total,
        "totalInputTokens": int(stats["total_input_tokens"]),
        "totalOutputTokens": int(stats["total_output_tokens"]),
        "avgResponseTime": float(stats["avg_response_time"]),
        "errorRate": int(stats["error_count"]) / total if total else 0.0,
        "modelStats": [format_model_stats_row(row) for row in stats["models"]],
    }


@router.get("/logs/{log_id}")
async def get_log(log_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    row = await services.store.get_prompt_log(log_id)
    if not row:
        raise HTTPException(status_code=404, detail="Log not found")
    return format_log_row(row)


@router.delete("/logs/chat/{chat_id}")
async def delete_chat_logs(chat_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    deleted = await services.store.delete_prompt_logs_for_chat(chat_id)
    return {"deleted": deleted, "chatId": chat_id}


@router.delete("/logs/{log_id}")
async def delete_log(log_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not await services.store.delete_prompt_log(log_id):
        raise HTTPException(status_code=404, detail="Log not found")
    return {"deleted": True, "id": log_id}
