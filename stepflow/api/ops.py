from __future__ import annotations

from fastapi import APIRouter, Depends

from stepflow.deps import get_scheduler
from stepflow.observability.metrics import get_runtime_metrics
from stepflow.protocol import PROTOCOL_VERSION

router = APIRouter(prefix="/v1", tags=["ops"])


@router.get("/health")
async def health(scheduler=Depends(get_scheduler)):
    return {
        "ok": True,
        "version": "0.1.0",
        "protocol_version": PROTOCOL_VERSION,
        "model": scheduler.model,
        "max_steps": scheduler.max_steps,
        "tools": scheduler.registry.names(),
    }


@router.get("/metrics")
async def metrics():
    return get_runtime_metrics().snapshot()
