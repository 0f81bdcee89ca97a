from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ..dependencies import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    ollama_ok = await services.registry.local_server_healthy()
    return {
        "status": "ok",
        "ollama": {"base_url": services.settings.ollama_base_url, "reachable": ollama_ok},
        "retrieval": {"configured": bool(services.settings.retrieval_base_url)},
        "database": str(services.settings.db_path),
    }


@router.get("/models")
async def list_models(services: Services = Depends(get_services)) -> Dict[str, Any]:
    models: List[Dict[str, Any]] = []
    try:
        for entry in await services.registry.list_local_models():
            name = entry.get("name")
            if name:
                models.append({"name": name, "provider": "ollama", "size": entry.get("size")})
    except Exception as exc:
        logger.warning("Could not list local models: %s", exc)
    table = await services.registry.model_table()
    for name, config in sorted(table.items()):
        models.append({"name": name, "provider": config.name})
    return {"models": models}
