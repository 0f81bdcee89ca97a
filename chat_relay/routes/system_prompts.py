from __future__ import annotations

from typing import Any, Dict, List

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import Services, get_services
from ..schemas import SystemPromptCreate, SystemPromptUpdate
from .helpers import format_system_prompt_row

router = APIRouter()

_DUPLICATE_NAME = "A system prompt with this name already exists"


@router.get("/system-prompts")
async def list_system_prompts(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [format_system_prompt_row(p) for p in await services.store.list_system_prompts()]


@router.post("/system-prompts", status_code=201)
async def create_system_prompt(req: SystemPromptCreate, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        prompt = await services.store.create_system_prompt(name=req.name.strip(), content=req.content)
    except aiosqlite.IntegrityError:
        raise HTTPException(status_code=409, detail=_DUPLICATE_NAME)
    return format_system_prompt_row(prompt)


@router.get("/system-prompts/{prompt_id}")
async def get_system_prompt(prompt_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    prompt = await services.store.get_system_prompt(prompt_id)
    if not prompt:
        raise HTTPException(status_code=404, detail="System prompt not found")
    return format_system_prompt_row(prompt)


@router.patch("/system-prompts/{prompt_id}")
async def update_system_prompt(
    prompt_id: str,
    req: SystemPromptUpdate,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        prompt = await services.store.update_system_prompt(
            prompt_id,
            name=req.name.strip() if req.name is not None else None,
            content=req.content,
        )
    except aiosqlite.IntegrityError:
        raise HTTPException(status_code=409, detail=_DUPLICATE_NAME)
    if not prompt:
        raise HTTPException(status_code=404, detail="System prompt not found")
    return format_system_prompt_row(prompt)


@router.delete("/system-prompts/{prompt_id}")
async def delete_system_prompt(prompt_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not await services.store.delete_system_prompt(prompt_id):
        raise HTTPException(status_code=404, detail="System prompt not found")
    return {"deleted": True, "id": prompt_id}
