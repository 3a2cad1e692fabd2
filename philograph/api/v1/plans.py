"""
PhiloGraph API v1 - Plan Endpoints

- POST /api/v1/plans                   submit (async by default, wait=true runs inline)
- GET  /api/v1/plans/{plan_id}         poll status
- POST /api/v1/plans/{plan_id}/cancel  request cancellation
"""

from typing import Any, Dict, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field
import structlog

from philograph.api.dependencies import get_plan_service
from philograph.plans.service import PlanService, PlanStatusView

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1")


class PlanSubmission(BaseModel):
    """Request body for submit_plan."""
    kind: str
    args: Dict[str, Any] = Field(default_factory=dict)
    wait: bool = False
    deadline_seconds: Optional[float] = Field(default=None, gt=0)


class PlanStatusResponse(BaseModel):
    plan_id: str
    kind: str
    status: str  # queued, processing, completed, failed, canceled
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    submitted_at: datetime
    updated_at: datetime


class CancelResponse(BaseModel):
    plan_id: str
    cancel_requested: bool


def _status_response(view: PlanStatusView) -> PlanStatusResponse:
    return PlanStatusResponse(**view.to_dict())


@router.post("/plans", response_model=PlanStatusResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_plan(
    request: Request,
    response: Response,
    body: PlanSubmission,
    service: PlanService = Depends(get_plan_service)
):
    """
    Submit a plan.

    Returns:
        - 202 with the queued status (default)
        - 200 with the completed status when wait=true
        - 4xx/503 with the failing step when a waited plan fails
    """
    request_id = request.state.request_id
    logger.info("plans.submit", request_id=request_id, kind=body.kind, wait=body.wait)

    if body.wait:
        plan_id = service.submit_plan(body.kind, body.args, body.deadline_seconds)
        response.status_code = status.HTTP_200_OK
    else:
        plan_id = service.submit_plan_async(body.kind, body.args, body.deadline_seconds)

    return _status_response(service.get_plan_status(plan_id))


@router.get("/plans/{plan_id}", response_model=PlanStatusResponse)
def get_plan_status(plan_id: str, service: PlanService = Depends(get_plan_service)):
    return _status_response(service.get_plan_status(plan_id))


@router.post("/plans/{plan_id}/cancel", response_model=CancelResponse)
def cancel_plan(request: Request, plan_id: str, service: PlanService = Depends(get_plan_service)):
    cancel_requested = service.cancel_plan(plan_id)
    logger.info(
        "plans.cancel",
        request_id=request.state.request_id,
        plan_id=plan_id,
        cancel_requested=cancel_requested
    )
    return CancelResponse(plan_id=plan_id, cancel_requested=cancel_requested)
