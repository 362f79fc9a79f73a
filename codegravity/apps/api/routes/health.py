from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from codegravity.services.telemetry import counters_snapshot, external_call_stats


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    counters: dict[str, int]
    providers: dict[str, dict[str, float]]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    # Liveness plus in-process counters; no dependency checks.
    return HealthResponse(
        status="ok",
        counters=counters_snapshot(),
        providers=external_call_stats(),
    )
