from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import Services, get_services
from ..errors import ProviderUnavailableError, UpstreamError
from ..providers.adapter import WIRE_SPECS
from ..providers.base import ProviderKind
from ..schemas import ProviderTest, ProviderUpdate
from .helpers import format_provider_row

router = APIRouter()


def _kind_or_400(name: str) -> ProviderKind:
    try:
        return ProviderKind(name.lower())
    except ValueError:
        supported = ", ".join(kind.value for kind in ProviderKind)
        raise HTTPException(status_code=400, detail=f"Unsupported provider '{name}'. Supported: {supported}")


@router.get("/providers")
async def list_providers(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    stored = {row["name"]: row for row in await services.store.list_providers()}
    results: List[Dict[str, Any]] = []
    for kind in ProviderKind:
        if kind is ProviderKind.OLLAMA:
            continue
        spec = WIRE_SPECS[kind]
        row = stored.get(kind.value) or {"name": kind.value, "enabled": False, "models": []}
        data = format_provider_row(row)
        data["label"] = spec.label
        data["requiresApiKey"] = spec.requires_key
        data["defaultBaseUrl"] = spec.default_base_url
        data["configured"] = kind.value in stored
        results.append(data)
    return results


@router.put("/providers/{name}")
async def upsert_provider(name: str, req: ProviderUpdate, services: Services = Depends(get_services)) -> Dict[str, Any]:
    kind = _kind_or_400(name)
    if kind is ProviderKind.OLLAMA:
        raise HTTPException(status_code=400, detail="The local Ollama server is configured through OLLAMA_BASE_URL")
    api_key = req.api_key.strip() if req.api_key and req.api_key.strip() else None
    await services.store.upsert_provider(
        kind.value,
        api_key=api_key,
        base_url=(req.base_url or "").strip() or None,
        models=[m.strip() for m in req.models if m.strip()],
        enabled=req.enabled,
    )
    row = await services.store.get_provider(kind.value)
    if row is None:
        raise HTTPException(status_code=500, detail="Provider could not be saved")
    return format_provider_row(row)


@router.delete("/providers/{name}")
async def delete_provider(name: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    kind = _kind_or_400(name)
    if not await services.store.delete_provider(kind.value):
        raise HTTPException(status_code=404, detail="Provider not configured")
    return {"deleted": True, "name": kind.value}


@router.post("/providers/test")
async def check_provider(req: ProviderTest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    kind = _kind_or_400(req.provider)
    stored = await services.store.get_provider(kind.value) or {}
    api_key = (req.api_key or "").strip() or stored.get("api_key")
    base_url = (req.base_url or "").strip() or stored.get("base_url")
    if kind is ProviderKind.OLLAMA:
        base_url = base_url or services.settings.ollama_base_url
    try:
        adapter = services.registry.adapter_for(kind, api_key=api_key, base_url=base_url)
        await adapter.check_connection()
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except UpstreamError as exc:
        status = 401 if exc.http_status in (401, 403) else 502
        raise HTTPException(status_code=status, detail=exc.message)
    return {"success": True, "provider": kind.value, "message": f"{adapter.spec.label} connection succeeded"}
