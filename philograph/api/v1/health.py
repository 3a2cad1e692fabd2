"""
PhiloGraph API v1 - Health Endpoints

- GET /healthz: availability of the relational, graph and document stores
"""

from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
import structlog

from philograph import __version__
from philograph.api.dependencies import get_plan_service
from philograph.plans.service import PlanService

logger = structlog.get_logger()

router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # "healthy" or "degraded"
    checks: Dict[str, str]  # store name -> "up" / "down"
    version: str


@router.get("/healthz", response_model=HealthResponse)
def health_check(service: PlanService = Depends(get_plan_service)):
    """
    Health check endpoint.

    Returns 200 with status "degraded" when any store is down.
    """
    checks = {}
    overall_status = "healthy"

    for name, available in service.health().items():
        checks[name] = "up" if available else "down"
        if not available:
            overall_status = "degraded"
            logger.warning("health.store.down", store=name)

    return HealthResponse(
        status=overall_status,
        checks=checks,
        version=__version__
    )
