"""
Metrics API
Read-only counters and gauges for an external observability backend.
"""
from fastapi import APIRouter, Depends

from ..services.controller import Controller, get_controller

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("")
async def get_metrics(controller: Controller = Depends(get_controller)):
    """Queue depth, per-resource health/phase and action latency"""
    return controller.metrics()
