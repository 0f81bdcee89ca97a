from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from ..dependencies import Services, get_services
from ..errors import ConfigurationError
from ..schemas import SettingsPatch

router = APIRouter()


@router.get("/settings")
async def get_settings(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return (await services.settings_service.get_settings()).model_dump()


@router.patch("/settings")
async def update_settings(req: SettingsPatch, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        updated = await services.settings_service.update_settings(req.sections())
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return updated.model_dump()


@router.post("/settings/reset")
async def reset_settings(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return (await services.settings_service.reset_settings()).model_dump()


@router.post("/settings/reset/{section}")
async def reset_settings_section(section: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        settings = await services.settings_service.reset_settings(section)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    return settings.model_dump()
