from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from codegravity.apps.api.deps import Principal, get_services, rate_limited_principal
from codegravity.apps.api.state import AppServices


router = APIRouter(tags=["providers"])


@router.get("/providers")
async def list_providers(
    principal: Principal = Depends(rate_limited_principal),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return {
        "providers": [
            {
                "name": config.name,
                "defaultModel": config.default_model,
                "models": list(config.models),
            }
            for config in services.catalog
        ]
    }
