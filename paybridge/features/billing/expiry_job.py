"""
Scheduled expiry sweep.

Marks subscriptions past their end date as expired, clears the company's
plan when nothing else is active and logs each expiry.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from paybridge.core.database import get_db_session
from paybridge.core.logging import log_event
from paybridge.core.metrics import subscription_transitions_total
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.models.billing import PaymentLogEvent, utc_now


def run_expiry_sweep(
    now: Optional[datetime] = None,
    repository: Optional[SubscriptionRepository] = None,
    *,
    dry_run: bool = False,
) -> Dict[str, Any]:
    now = now or utc_now()
    repository = repository or SubscriptionRepository()

    if dry_run:
        with get_db_session() as session:
            candidates = repository.count_lapsed_unexpired(session, now)
        log_event("info", "subscription.expiry_sweep", extra={"candidates": candidates, "dry_run": True})
        return {"expired": 0, "candidates": candidates, "subscription_ids": [], "dry_run": True, "timestamp": now.isoformat()}

    with get_db_session() as session:
        expired = repository.expire_lapsed(session, now)
        for subscription in expired:
            if repository.get_active_subscription(session, subscription.company_id, now) is None:
                repository.set_company_plan(session, subscription.company_id, None)
            repository.append_log(
                session,
                PaymentLogEvent.SUBSCRIPTION_EXPIRED,
                now=now,
                company_id=subscription.company_id,
                subscription_id=subscription.id,
                plan_id=subscription.plan_id,
                details={"end_date": subscription.end_date.isoformat()},
            )

    if expired:
        subscription_transitions_total.inc(labels={"transition": "to_expired"}, amount=len(expired))
    log_event("info", "subscription.expiry_sweep", extra={"expired": len(expired)})
    return {
        "expired": len(expired),
        "candidates": len(expired),
        "subscription_ids": [s.id for s in expired],
        "dry_run": False,
        "timestamp": now.isoformat(),
    }
