from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from syncbridge.apps.api.deps import get_integration_context
from syncbridge.integrations.context import IntegrationContext
from syncbridge.services.telemetry import counters_snapshot, source_call_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/v1/ops/metrics")
async def metrics(
    window_s: int = 300,
    context: IntegrationContext = Depends(get_integration_context),
) -> dict:
    # Per-integration source API latency plus process counters for dashboards.
    return {
        "counters": counters_snapshot(),
        "source_calls": {name: source_call_stats(name, window_s) for name in context.registry.names()},
    }
