"""
Subscription lifecycle manager.

States are derived from stored rows, never stored themselves:

    NONE -> PENDING_PAYMENT -> ACTIVE -> CANCELLING -> EXPIRED
                 (free plan / trial) ^        |
                                     +--------+  renew

Purchases and upgrades go through the PaymentOrchestrator; cancellation,
renewal, trials and usage reporting are handled here.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from paybridge.core.config import settings
from paybridge.core.database import get_db_session
from paybridge.core.errors import (
    ActiveSubscriptionExists,
    AuthorizationError,
    InvalidSubscriptionState,
    PaymentProcessingFailed,
    SubscriptionNotFound,
    ValidationError,
)
from paybridge.core.logging import log_event
from paybridge.core.metrics import subscription_transitions_total
from paybridge.features.billing.gateway import GatewayError
from paybridge.features.billing.orchestrator import PaymentOrchestrator
from paybridge.features.subscriptions.access import DatabaseUsageSource, UsageSource
from paybridge.models.billing import (
    LIMIT_RESOURCES,
    CompanySubscription,
    PaymentLogEvent,
    PaymentResult,
    PaymentType,
    ResourceUsage,
    SubscriptionState,
    UsageReport,
    utc_now,
)


def subscription_state(
    latest: Optional[CompanySubscription],
    now: datetime,
    has_pending_payment: bool = False,
) -> SubscriptionState:
    """Derive the lifecycle state from the most recent row."""
    if latest is not None and latest.is_active(now):
        return SubscriptionState.CANCELLING if latest.cancel_at_period_end else SubscriptionState.ACTIVE
    if has_pending_payment:
        return SubscriptionState.PENDING_PAYMENT
    if latest is not None:
        return SubscriptionState.EXPIRED
    return SubscriptionState.NONE


class SubscriptionLifecycleManager:
    def __init__(self, orchestrator: PaymentOrchestrator, usage_source: Optional[UsageSource] = None):
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway
        self.repository = orchestrator.repository
        self.catalog = orchestrator.catalog
        self.usage_source = usage_source or DatabaseUsageSource()

    def company_for_user(self, user_id: str) -> str:
        role = self.orchestrator.directory.get_user_selected_role(user_id)
        if role is None:
            raise AuthorizationError("No role selected")
        return role.company_id

    def get_active_subscription(self, company_id: str, now: Optional[datetime] = None) -> Optional[CompanySubscription]:
        now = now or utc_now()
        with get_db_session() as session:
            return self.repository.get_active_subscription(session, company_id, now)

    def get_subscription_state(self, company_id: str, now: Optional[datetime] = None) -> SubscriptionState:
        now = now or utc_now()
        with get_db_session() as session:
            active = self.repository.get_active_subscription(session, company_id, now)
            latest = active or self.repository.get_latest_subscription(session, company_id)
            pending = self.repository.has_pending_transaction(session, company_id, PaymentType.NEW_SUBSCRIPTION)
        return subscription_state(latest, now, has_pending_payment=pending)

    def _require_active(self, user_id: str, now: datetime) -> CompanySubscription:
        role = self.orchestrator.resolve_author(user_id)
        active = self.get_active_subscription(role.company_id, now)
        if active is None:
            raise SubscriptionNotFound("No active subscription")
        return active

    def upgrade_subscription(self, user_id: str, plan_id: str, now: Optional[datetime] = None) -> PaymentResult:
        """Change plan mid-period; delegates pricing and payment to the orchestrator."""
        now = now or utc_now()
        active = self._require_active(user_id, now)
        if active.plan_id == plan_id:
            raise ActiveSubscriptionExists("Company is already on this plan")
        return self.orchestrator.create_payment(user_id, plan_id, now=now)

    def cancel_subscription(self, user_id: str, immediate: bool = False, now: Optional[datetime] = None) -> CompanySubscription:
        now = now or utc_now()
        active = self._require_active(user_id, now)

        if immediate:
            if active.external_subscription_id:
                self._processor(self.gateway.cancel_subscription, active.external_subscription_id)
            with get_db_session() as session:
                updated = self.repository.update_subscription(
                    session,
                    active.id,
                    is_expired=True,
                    cancel_at_period_end=False,
                    updated_at=now,
                )
                self.repository.set_company_plan(session, active.company_id, None)
                self.repository.append_log(
                    session,
                    PaymentLogEvent.SUBSCRIPTION_CANCELLED,
                    now=now,
                    company_id=active.company_id,
                    user_id=user_id,
                    subscription_id=active.id,
                    plan_id=active.plan_id,
                    details={"immediate": True},
                )
            subscription_transitions_total.inc(labels={"transition": "to_expired"})
        else:
            if active.cancel_at_period_end:
                return active
            if active.external_subscription_id:
                self._processor(self.gateway.set_cancel_at_period_end, active.external_subscription_id, True)
            with get_db_session() as session:
                updated = self.repository.update_subscription(session, active.id, cancel_at_period_end=True, updated_at=now)
                self.repository.append_log(
                    session,
                    PaymentLogEvent.SUBSCRIPTION_CANCEL_SCHEDULED,
                    now=now,
                    company_id=active.company_id,
                    user_id=user_id,
                    subscription_id=active.id,
                    plan_id=active.plan_id,
                    details={"immediate": False, "end_date": active.end_date.isoformat()},
                )
            subscription_transitions_total.inc(labels={"transition": "active_to_cancelling"})

        log_event(
            "info",
            "subscription.cancelled",
            user_id=user_id,
            company_id=active.company_id,
            subscription_id=active.id,
            extra={"immediate": immediate},
        )
        return updated

    def renew_subscription(self, subscription_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> CompanySubscription:
        """Extend an active subscription by one billing period and clear a pending cancel."""
        now = now or utc_now()
        with get_db_session() as session:
            subscription = self.repository.get_subscription(session, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        if user_id is not None:
            role = self.orchestrator.resolve_author(user_id)
            if role.company_id != subscription.company_id:
                raise AuthorizationError("Subscription belongs to another company")

        state = subscription_state(subscription, now)
        if state not in (SubscriptionState.ACTIVE, SubscriptionState.CANCELLING):
            raise InvalidSubscriptionState(f"Cannot renew a subscription in state {state.value}")

        if subscription.cancel_at_period_end and subscription.external_subscription_id:
            self._processor(self.gateway.set_cancel_at_period_end, subscription.external_subscription_id, False)

        new_end = subscription.end_date + timedelta(days=settings.BILLING_PERIOD_DAYS)
        with get_db_session() as session:
            updated = self.repository.update_subscription(
                session,
                subscription.id,
                end_date=new_end,
                cancel_at_period_end=False,
                updated_at=now,
            )
            self.repository.append_log(
                session,
                PaymentLogEvent.SUBSCRIPTION_RENEWED,
                now=now,
                company_id=subscription.company_id,
                user_id=user_id,
                subscription_id=subscription.id,
                plan_id=subscription.plan_id,
                details={"previous_end_date": subscription.end_date.isoformat(), "end_date": new_end.isoformat()},
            )
        subscription_transitions_total.inc(labels={"transition": "renewed"})
        return updated

    def get_usage_report(self, user_id: str, now: Optional[datetime] = None) -> UsageReport:
        now = now or utc_now()
        company_id = self.company_for_user(user_id)
        active = self.get_active_subscription(company_id, now)
        if active is None:
            raise SubscriptionNotFound("No active subscription")
        plan = self.catalog.get_plan(active.plan_id)
        counts = self.usage_source.get_usage(company_id)

        usage = {}
        for resource in LIMIT_RESOURCES:
            used = int(counts.get(resource, 0))
            limit = plan.limit_for(resource)
            if limit < 0:
                usage[resource] = ResourceUsage(used=used, unlimited=True)
            else:
                usage[resource] = ResourceUsage(used=used, limit=limit, remaining=max(0, limit - used))
        return UsageReport(
            company_id=company_id,
            plan_id=plan.id,
            plan_name=plan.name,
            end_date=active.end_date,
            usage=usage,
        )

    def create_trial_subscription(
        self,
        user_id: str,
        plan_id: str,
        trial_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CompanySubscription:
        """
        Start a free trial on `plan_id`.

        The processor subscription (when the plan has a processor price) is
        created first; if the local write then fails it is cancelled again.
        No transaction is recorded for a trial.
        """
        now = now or utc_now()
        days = settings.DEFAULT_TRIAL_DAYS if trial_days is None else trial_days
        if days <= 0:
            raise ValidationError("trial_days must be positive")

        role = self.orchestrator.resolve_author(user_id)
        plan = self.orchestrator.get_purchasable_plan(plan_id)
        company = self.orchestrator.get_company(role.company_id)
        if self.get_active_subscription(company.id, now) is not None:
            raise ActiveSubscriptionExists("Company already has an active subscription")

        remote = None
        if plan.external_price_id:
            customer_id = self.orchestrator.ensure_customer(company, user_id)
            remote = self._processor(
                self.gateway.create_trial_subscription,
                customer_id,
                plan.external_price_id,
                days,
                metadata={"company_id": company.id, "plan_id": plan.id, "user_id": user_id},
            )

        try:
            with get_db_session() as session:
                self.repository.expire_lapsed(session, now, company_id=company.id)
                subscription = self.repository.insert_subscription(
                    session,
                    company_id=company.id,
                    plan_id=plan.id,
                    start_date=now,
                    end_date=now + timedelta(days=days),
                    is_trial=True,
                    external_subscription_id=remote.id if remote else None,
                    external_item_id=remote.item_id if remote else None,
                )
                self.repository.set_company_plan(session, company.id, plan.id)
                self.repository.append_log(
                    session,
                    PaymentLogEvent.SUBSCRIPTION_TRIAL_CREATED,
                    now=now,
                    company_id=company.id,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    plan_id=plan.id,
                    details={"trial_days": days},
                )
        except IntegrityError as exc:
            self._cancel_orphan(remote, company.id)
            raise ActiveSubscriptionExists("Company already has an active subscription") from exc
        except Exception:
            self._cancel_orphan(remote, company.id)
            raise

        subscription_transitions_total.inc(labels={"transition": "none_to_active"})
        log_event("info", "subscription.trial_created", user_id=user_id, company_id=company.id, subscription_id=subscription.id)
        return subscription

    def _processor(self, operation, *args, **kwargs):
        try:
            return operation(*args, **kwargs)
        except GatewayError as exc:
            log_event("error", "subscription.processor_failed", error_code=exc.code, extra={"error": exc})
            raise PaymentProcessingFailed() from exc

    def _cancel_orphan(self, remote, company_id: str) -> None:
        if remote is None:
            return
        try:
            self.gateway.cancel_subscription(remote.id)
        except GatewayError as exc:
            log_event(
                "error",
                "subscription.trial_orphaned",
                company_id=company_id,
                error_code=exc.code,
                extra={"external_subscription_id": remote.id},
            )
