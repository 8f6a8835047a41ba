"""
Test subscription lifecycle: state derivation, cancellation, renewal,
trials and usage reporting.
"""
from datetime import timedelta

import pytest
from sqlalchemy import insert

from paybridge.core.database import company_usage, get_db_session
from paybridge.core.errors import (
    ActiveSubscriptionExists,
    AuthorizationError,
    InvalidSubscriptionState,
    PaymentProcessingFailed,
    SubscriptionNotFound,
    ValidationError,
)
from paybridge.features.billing.expiry_job import run_expiry_sweep
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.features.subscriptions.lifecycle import SubscriptionLifecycleManager, subscription_state
from paybridge.models.billing import CompanySubscription, PaymentLogEvent, SubscriptionState
from paybridge.tests.mocks import activate

repo = SubscriptionRepository()


@pytest.fixture
def manager(orchestrator):
    return SubscriptionLifecycleManager(orchestrator)


def _with_remote(subscription_id):
    with get_db_session() as session:
        return repo.update_subscription(
            session, subscription_id, external_subscription_id="sub_remote", external_item_id="si_remote"
        )


def _row(now, **overrides):
    values = dict(id="s1", company_id="co_acme", plan_id="pro", start_date=now, end_date=now + timedelta(days=30))
    values.update(overrides)
    return CompanySubscription(**values)


class TestStateDerivation:
    def test_none_without_rows(self, now):
        assert subscription_state(None, now) == SubscriptionState.NONE

    def test_pending_payment(self, now):
        assert subscription_state(None, now, has_pending_payment=True) == SubscriptionState.PENDING_PAYMENT

    def test_active(self, now):
        assert subscription_state(_row(now), now) == SubscriptionState.ACTIVE

    def test_cancelling(self, now):
        assert subscription_state(_row(now, cancel_at_period_end=True), now) == SubscriptionState.CANCELLING

    def test_expired_flag(self, now):
        assert subscription_state(_row(now, is_expired=True), now) == SubscriptionState.EXPIRED

    def test_past_end_date(self, now):
        assert subscription_state(_row(now), now + timedelta(days=31)) == SubscriptionState.EXPIRED


def test_state_is_pending_while_payment_open(manager, orchestrator, now):
    orchestrator.create_payment("user_author", "pro", now=now)
    assert manager.get_subscription_state("co_acme", now=now) == SubscriptionState.PENDING_PAYMENT


def test_immediate_cancel_expires_synchronously(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    _with_remote(result.subscription_id)
    later = now + timedelta(days=5)

    cancelled = manager.cancel_subscription("user_author", immediate=True, now=later)

    assert cancelled.is_expired is True
    assert manager.get_active_subscription("co_acme", now=later) is None
    assert manager.get_subscription_state("co_acme", now=later) == SubscriptionState.EXPIRED
    assert gateway.calls_to("cancel_subscription")[0][1] == ("sub_remote",)
    with get_db_session() as session:
        assert repo.get_company(session, "co_acme").plan_id is None
        assert len(repo.list_logs(session, event=PaymentLogEvent.SUBSCRIPTION_CANCELLED)) == 1


def test_deferred_cancel_keeps_access_until_period_end(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    later = now + timedelta(days=5)

    cancelled = manager.cancel_subscription("user_author", now=later)

    assert cancelled.is_expired is False
    assert cancelled.cancel_at_period_end is True
    assert manager.get_subscription_state("co_acme", now=later) == SubscriptionState.CANCELLING
    assert manager.get_active_subscription("co_acme", now=now + timedelta(days=29)).id == result.subscription_id

    after_end = now + timedelta(days=30, minutes=1)
    run_expiry_sweep(now=after_end)
    with get_db_session() as session:
        assert repo.get_subscription(session, result.subscription_id).is_expired is True


def test_deferred_cancel_is_idempotent(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    _with_remote(result.subscription_id)

    manager.cancel_subscription("user_author", now=now)
    manager.cancel_subscription("user_author", now=now)

    assert len(gateway.calls_to("set_cancel_at_period_end")) == 1
    with get_db_session() as session:
        assert len(repo.list_logs(session, event=PaymentLogEvent.SUBSCRIPTION_CANCEL_SCHEDULED)) == 1


def test_cancel_without_subscription(manager, now):
    with pytest.raises(SubscriptionNotFound):
        manager.cancel_subscription("user_author", now=now)


def test_cancel_requires_author(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "pro", now)
    with pytest.raises(AuthorizationError):
        manager.cancel_subscription("user_member", now=now)


def test_processor_failure_leaves_local_state(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    _with_remote(result.subscription_id)
    gateway.fail_on.add("cancel_subscription")

    with pytest.raises(PaymentProcessingFailed):
        manager.cancel_subscription("user_author", immediate=True, now=now)
    assert manager.get_active_subscription("co_acme", now=now) is not None


def test_renew_extends_and_clears_pending_cancel(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    _with_remote(result.subscription_id)
    manager.cancel_subscription("user_author", now=now)

    renewed = manager.renew_subscription(result.subscription_id, user_id="user_author", now=now + timedelta(days=20))

    assert renewed.end_date == now + timedelta(days=60)
    assert renewed.cancel_at_period_end is False
    assert gateway.calls_to("set_cancel_at_period_end")[-1][1] == ("sub_remote", False)
    assert manager.get_subscription_state("co_acme", now=now + timedelta(days=20)) == SubscriptionState.ACTIVE


def test_renew_expired_subscription_is_rejected(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    manager.cancel_subscription("user_author", immediate=True, now=now)

    with pytest.raises(InvalidSubscriptionState):
        manager.renew_subscription(result.subscription_id, now=now)


def test_renew_other_company_subscription_is_forbidden(manager, orchestrator, gateway, now):
    result = activate(orchestrator, gateway, "pro", now)
    with pytest.raises(AuthorizationError):
        manager.renew_subscription(result.subscription_id, user_id="user_other", now=now)


def test_renew_unknown_subscription(manager, now):
    with pytest.raises(SubscriptionNotFound):
        manager.renew_subscription("missing", now=now)


def test_upgrade_requires_active_subscription(manager, now):
    with pytest.raises(SubscriptionNotFound):
        manager.upgrade_subscription("user_author", "business", now=now)


def test_upgrade_to_same_plan_is_rejected(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "pro", now)
    with pytest.raises(ActiveSubscriptionExists):
        manager.upgrade_subscription("user_author", "pro", now=now)


def test_upgrade_returns_prorated_payment(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "pro", now)
    result = manager.upgrade_subscription("user_author", "business", now=now + timedelta(days=15))
    assert result.is_upgrade is True
    assert result.proration_amount == 500


def test_local_trial_creates_row_without_transaction(manager, gateway, now):
    trial = manager.create_trial_subscription("user_author", "enterprise", now=now)

    assert trial.is_trial is True
    assert trial.end_date == now + timedelta(days=14)
    assert trial.external_subscription_id is None
    assert gateway.calls == []
    with get_db_session() as session:
        assert sum(repo.count_transactions(session, "co_acme").values()) == 0
        assert len(repo.list_subscriptions(session, "co_acme")) == 1
        assert len(repo.list_logs(session, event=PaymentLogEvent.SUBSCRIPTION_TRIAL_CREATED)) == 1
    assert manager.get_subscription_state("co_acme", now=now) == SubscriptionState.ACTIVE


def test_trial_on_priced_plan_creates_processor_trial(manager, gateway, now):
    trial = manager.create_trial_subscription("user_author", "pro", trial_days=7, now=now)

    name, args, kwargs = gateway.calls_to("create_trial_subscription")[0]
    assert args[1:] == ("price_pro", 7)
    assert kwargs["metadata"]["company_id"] == "co_acme"
    assert trial.external_subscription_id is not None
    assert trial.end_date == now + timedelta(days=7)


def test_trial_rejected_when_active(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "pro", now)
    with pytest.raises(ActiveSubscriptionExists):
        manager.create_trial_subscription("user_author", "business", now=now)


@pytest.mark.parametrize("days", [0, -3])
def test_trial_days_must_be_positive(manager, now, days):
    with pytest.raises(ValidationError):
        manager.create_trial_subscription("user_author", "pro", trial_days=days, now=now)


def test_trial_cancels_processor_subscription_when_local_write_loses(manager, gateway, now, monkeypatch):
    with get_db_session() as session:
        repo.insert_subscription(session, company_id="co_acme", plan_id="free", start_date=now, end_date=now + timedelta(days=30))
    # Simulate a concurrent writer landing between the check and the insert
    monkeypatch.setattr(manager, "get_active_subscription", lambda company_id, now=None: None)

    with pytest.raises(ActiveSubscriptionExists):
        manager.create_trial_subscription("user_author", "pro", now=now)

    created = gateway.calls_to("create_trial_subscription")
    cancelled = gateway.calls_to("cancel_subscription")
    assert len(created) == 1 and len(cancelled) == 1


def test_usage_report(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "pro", now)
    with get_db_session() as session:
        session.execute(insert(company_usage).values(company_id="co_acme", resource="workspaces", used=3))
        session.execute(insert(company_usage).values(company_id="co_acme", resource="sheets", used=30))

    report = manager.get_usage_report("user_member", now=now)

    assert report.plan_id == "pro"
    assert report.usage["workspaces"].used == 3
    assert report.usage["workspaces"].remaining == 2
    assert report.usage["sheets"].remaining == 0
    assert report.usage["members"].used == 1
    assert report.usage["members"].limit == 10
    assert report.usage["viewers"].used == 1


def test_usage_report_unlimited(manager, orchestrator, gateway, now):
    activate(orchestrator, gateway, "business", now)
    report = manager.get_usage_report("user_author", now=now)
    assert report.usage["tasks"].unlimited is True
    assert report.usage["tasks"].limit is None
    assert report.usage["tasks"].remaining is None


def test_usage_report_requires_subscription_and_role(manager, now):
    with pytest.raises(SubscriptionNotFound):
        manager.get_usage_report("user_author", now=now)
    with pytest.raises(AuthorizationError):
        manager.get_usage_report("user_nobody", now=now)
