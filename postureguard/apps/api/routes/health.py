from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.services.telemetry import counters_snapshot, external_latency_by_integration

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ProviderCallStats(BaseModel):
    p95: float | None = None
    max: float | None = None
    error_rate: float | None = None


class OpsMetricsResponse(BaseModel):
    providers: dict[str, ProviderCallStats]
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok").model_dump())


@router.get("/ops/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(request: Request, window_s: int = 900) -> dict:
    # Provider latency and error rates over the window plus in-process counters.
    payload = OpsMetricsResponse(
        providers={
            name: ProviderCallStats(**stats)
            for name, stats in external_latency_by_integration(max(1, window_s)).items()
        },
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload.model_dump())
