"""
Subscription API routes.

All routes act on the company of the caller's selected role.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from paybridge.core.auth import get_current_user_id
from paybridge.features.billing.service import get_lifecycle_manager
from paybridge.features.subscriptions.lifecycle import SubscriptionLifecycleManager
from paybridge.features.subscriptions.limits import assert_within_limit
from paybridge.models.billing import CompanySubscription


router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


class UpgradeRequest(BaseModel):
    plan_id: str


class CancelRequest(BaseModel):
    immediate: bool = False


class TrialRequest(BaseModel):
    plan_id: str
    trial_days: Optional[int] = None


def _render(subscription: Optional[CompanySubscription]) -> Optional[dict]:
    if subscription is None:
        return None
    return {
        "id": subscription.id,
        "company_id": subscription.company_id,
        "plan_id": subscription.plan_id,
        "start_date": subscription.start_date.isoformat(),
        "end_date": subscription.end_date.isoformat(),
        "is_expired": subscription.is_expired,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "is_trial": subscription.is_trial,
    }


@router.get("/active")
def get_active(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    company_id = manager.company_for_user(user_id)
    return {"subscription": _render(manager.get_active_subscription(company_id))}


@router.get("/state")
def get_state(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    company_id = manager.company_for_user(user_id)
    return {"company_id": company_id, "state": manager.get_subscription_state(company_id).value}


@router.post("/upgrade")
def upgrade(
    request: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.upgrade_subscription(user_id, request.plan_id).model_dump()


@router.post("/cancel")
def cancel(
    request: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    subscription = manager.cancel_subscription(user_id, immediate=request.immediate)
    return {"subscription": _render(subscription)}


@router.post("/{subscription_id}/renew")
def renew(
    subscription_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    subscription = manager.renew_subscription(subscription_id, user_id=user_id)
    return {"subscription": _render(subscription)}


@router.get("/usage")
def usage(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get_usage_report(user_id).model_dump(mode="json")


@router.get("/limits/{resource}")
def check_limit(
    resource: str,
    requested: int = Query(1, ge=1),
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """403 when `requested` more of `resource` would exceed the plan."""
    company_id = manager.company_for_user(user_id)
    remaining = assert_within_limit(
        company_id,
        resource,
        requested=requested,
        usage_source=manager.usage_source,
        catalog=manager.catalog,
        repository=manager.repository,
    )
    return {"resource": resource, "allowed": True, "remaining": None if remaining < 0 else remaining}


@router.post("/trial")
def start_trial(
    request: TrialRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    subscription = manager.create_trial_subscription(user_id, request.plan_id, trial_days=request.trial_days)
    return {"subscription": _render(subscription)}
