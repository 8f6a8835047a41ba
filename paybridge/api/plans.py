"""Plan catalog routes."""
from fastapi import APIRouter, Depends, Query

from paybridge.features.billing.service import get_plan_catalog
from paybridge.features.plans.catalog import PlanCatalog, render_plan


router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


@router.get("")
def list_plans(
    include_inactive: bool = Query(False),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    return {"plans": [render_plan(plan) for plan in catalog.list_plans(include_inactive=include_inactive)]}


@router.get("/{plan_id}")
def get_plan(plan_id: str, catalog: PlanCatalog = Depends(get_plan_catalog)):
    return render_plan(catalog.get_plan(plan_id))
