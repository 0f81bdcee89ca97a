from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import Services, get_services
from ..schemas import ChatCreate, ChatUpdate
from .helpers import format_chat_row, format_message_row

router = APIRouter()


async def _require_chat(services: Services, chat_id: str) -> Dict[str, Any]:
    chat = await services.store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


async def _require_prompt(services: Services, prompt_id: str) -> None:
    if not await services.store.get_system_prompt(prompt_id):
        raise HTTPException(status_code=400, detail="Unknown system prompt")


@router.get("/chats")
async def list_chats(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [format_chat_row(chat) for chat in await services.store.list_chats()]


@router.post("/chats", status_code=201)
async def create_chat(req: ChatCreate, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if req.system_prompt_id:
        await _require_prompt(services, req.system_prompt_id)
    chat = await services.store.create_chat(
        model=req.model,
        system_prompt_id=req.system_prompt_id,
        title=req.title,
    )
    return format_chat_row(chat)


@router.get("/chats/{chat_id}")
async def get_chat(chat_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    chat = await _require_chat(services, chat_id)
    data = format_chat_row(chat)
    data["messages"] = [format_message_row(m) for m in await services.store.fetch_messages(chat_id)]
    return data


@router.patch("/chats/{chat_id}")
async def update_chat(chat_id: str, req: ChatUpdate, services: Services = Depends(get_services)) -> Dict[str, Any]:
    await _require_chat(services, chat_id)
    fields = req.model_dump(exclude_unset=True)
    if fields.get("system_prompt_id"):
        await _require_prompt(services, fields["system_prompt_id"])
    chat = await services.store.update_chat(chat_id, **fields)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return format_chat_row(chat)


@router.delete("/chats/{chat_id}")
async def delete_chat(chat_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not await services.store.delete_chat(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"deleted": True, "id": chat_id}


@router.get("/chats/{chat_id}/messages")
async def list_messages(chat_id: str, services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    await _require_chat(services, chat_id)
    return [format_message_row(m) for m in await services.store.fetch_messages(chat_id)]


@router.delete("/messages/{message_id}")
async def delete_message(message_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not await services.store.delete_message(message_id):
        raise HTTPException(status_code=404, detail="Message not found")
    return {"deleted": True, "id": message_id}
