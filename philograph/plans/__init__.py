"""
PhiloGraph - Plans

Plan builders per plan kind and the submission/status service.
"""

from philograph.plans.builders import PLAN_KINDS, PlanBuilder, PlanDependencies
from philograph.plans.projections import ProjectionReader
from philograph.plans.service import PlanService, PlanStatus, PlanStatusView

__all__ = [
    'PLAN_KINDS',
    'PlanBuilder',
    'PlanDependencies',
    'ProjectionReader',
    'PlanService',
    'PlanStatus',
    'PlanStatusView',
]
