"""Plan limit guard used before creating limited resources."""
from datetime import datetime
from typing import Optional

from paybridge.core.database import get_db_session
from paybridge.core.errors import NoActiveSubscription, UsageLimitExceeded, ValidationError
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.features.plans.catalog import PlanCatalog
from paybridge.features.subscriptions.access import DatabaseUsageSource, UsageSource
from paybridge.models.billing import LIMIT_RESOURCES, utc_now


LIMIT_CODES = {
    "workspaces": ("WORKSPACE_LIMIT_REACHED", "Workspace limit reached"),
    "sheets": ("SHEET_LIMIT_REACHED", "Sheet limit reached"),
    "members": ("MEMBER_LIMIT_REACHED", "Member limit reached"),
    "viewers": ("VIEWER_LIMIT_REACHED", "Viewer limit reached"),
    "tasks": ("TASK_LIMIT_REACHED", "Task limit reached"),
}


def assert_within_limit(
    company_id: str,
    resource: str,
    *,
    requested: int = 1,
    usage_source: Optional[UsageSource] = None,
    catalog: Optional[PlanCatalog] = None,
    repository: Optional[SubscriptionRepository] = None,
    now: Optional[datetime] = None,
) -> int:
    """Raise UsageLimitExceeded unless `requested` more of `resource` fit the plan.

    Returns the remaining allowance after the request, or -1 when unlimited.
    """
    if resource not in LIMIT_RESOURCES:
        raise ValidationError(f"Unknown resource: {resource}")
    now = now or utc_now()
    repository = repository or SubscriptionRepository()
    catalog = catalog or PlanCatalog()

    with get_db_session() as session:
        active = repository.get_active_subscription(session, company_id, now)
        if active is None:
            raise NoActiveSubscription("No active subscription")
        plan = catalog.get_plan(active.plan_id, session=session)

    limit = plan.limit_for(resource)
    if limit < 0:
        return -1

    used = (usage_source or DatabaseUsageSource()).get_usage(company_id).get(resource, 0)
    if used + requested > limit:
        code, message = LIMIT_CODES[resource]
        raise UsageLimitExceeded(f"{message} for plan {plan.name} ({used}/{limit})", code=code)
    return limit - used - requested
