"""
Test webhook reconciliation.

Covers signature checks, at-most-once processing, ordering and the
convergence of the webhook and confirmation paths.
"""
import json
from datetime import timedelta

import pytest

from paybridge.core.database import get_db_session
from paybridge.core.errors import WebhookProcessingFailed, WebhookSignatureError
from paybridge.core.metrics import subscription_transitions_total, webhook_events_total
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.features.billing.webhooks import WebhookReconciler
from paybridge.features.subscriptions.lifecycle import SubscriptionLifecycleManager
from paybridge.models.billing import PaymentLogEvent, PaymentType, SubscriptionState, TransactionStatus
from paybridge.tests.mocks import activate, intent_payload, make_event, sign, subscription_payload

repo = SubscriptionRepository()


@pytest.fixture
def reconciler(orchestrator):
    return WebhookReconciler(orchestrator)


def _remote_subscription(orchestrator, gateway, now, plan_id="pro"):
    result = activate(orchestrator, gateway, plan_id, now)
    with get_db_session() as session:
        return repo.update_subscription(
            session,
            result.subscription_id,
            external_subscription_id="sub_remote",
            external_item_id="si_sub_remote",
        )


def _subscription(subscription_id):
    with get_db_session() as session:
        return repo.get_subscription(session, subscription_id)


def _processed_logs(event_id):
    with get_db_session() as session:
        return repo.list_logs(session, event=PaymentLogEvent.WEBHOOK_PROCESSED, external_event_id=event_id)


def test_invalid_signature_is_rejected(reconciler, now):
    headers, body = make_event("evt_bad", "payment_intent.succeeded", {"id": "pi_x"}, now)

    with pytest.raises(WebhookSignatureError) as exc:
        reconciler.handle({"stripe-signature": "forged"}, body, now=now)

    assert exc.value.status_code == 400
    assert _processed_logs("evt_bad") == []
    assert webhook_events_total.value({"type": "unknown", "outcome": "invalid_signature"}) == 1


def test_payment_succeeded_settles_pending_payment(reconciler, orchestrator, gateway, now):
    created = orchestrator.create_payment("user_author", "pro", now=now)
    intent = gateway.complete_intent(created.payment_intent_id)
    headers, body = make_event("evt_paid", "payment_intent.succeeded", intent_payload(intent), now)

    outcome = reconciler.handle(headers, body, now=now)

    assert outcome.status == "processed"
    assert outcome.event_id == "evt_paid"
    with get_db_session() as session:
        active = repo.get_active_subscription(session, "co_acme", now)
        transaction = repo.get_transaction_by_intent(session, intent.id)
    assert active.plan_id == "pro"
    assert transaction.status == TransactionStatus.SUCCEEDED
    assert transaction.subscription_id == active.id
    logs = _processed_logs("evt_paid")
    assert len(logs) == 1 and logs[0].status == "settled"

    # The client confirmation arriving afterwards converges on the same result
    confirmed = orchestrator.confirm_payment(intent.id, now=now)
    assert confirmed.already_applied is True
    assert confirmed.subscription_id == active.id


def test_duplicate_event_is_processed_once(reconciler, orchestrator, gateway, now):
    created = orchestrator.create_payment("user_author", "pro", now=now)
    intent = gateway.complete_intent(created.payment_intent_id)
    headers, body = make_event("evt_dup", "payment_intent.succeeded", intent_payload(intent), now)

    first = reconciler.handle(headers, body, now=now)
    second = reconciler.handle(headers, body, now=now + timedelta(seconds=5))

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert len(_processed_logs("evt_dup")) == 1
    with get_db_session() as session:
        assert len(repo.list_subscriptions(session, "co_acme")) == 1
        assert repo.count_transactions(session, "co_acme")["SUCCEEDED"] == 1


def test_webhook_after_confirmation_is_a_no_op(reconciler, orchestrator, gateway, now):
    created = orchestrator.create_payment("user_author", "pro", now=now)
    intent = gateway.complete_intent(created.payment_intent_id)
    orchestrator.confirm_payment(intent.id, now=now)
    headers, body = make_event("evt_late", "payment_intent.succeeded", intent_payload(intent), now)

    outcome = reconciler.handle(headers, body, now=now)

    assert outcome.status == "processed"
    assert _processed_logs("evt_late")[0].status == "already_applied"
    with get_db_session() as session:
        assert len(repo.list_subscriptions(session, "co_acme")) == 1


def test_payment_failed_marks_transaction_failed(reconciler, orchestrator, gateway, now):
    created = orchestrator.create_payment("user_author", "pro", now=now)
    intent = gateway.complete_intent(
        created.payment_intent_id,
        status="requires_payment_method",
        error_code="insufficient_funds",
        error_message="Insufficient funds",
    )
    headers, body = make_event("evt_fail", "payment_intent.payment_failed", intent_payload(intent), now)

    assert reconciler.handle(headers, body, now=now).status == "processed"

    with get_db_session() as session:
        transaction = repo.get_transaction_by_intent(session, intent.id)
        failures = repo.list_logs(session, event=PaymentLogEvent.PAYMENT_FAILURE)
    assert transaction.status == TransactionStatus.FAILED
    assert transaction.failure_code == "insufficient_funds"
    assert len(failures) == 1


def test_foreign_payment_intent_is_ignored(reconciler, seeded, now):
    payload = {"id": "pi_foreign", "status": "succeeded", "amount": 500, "currency": "usd", "metadata": {}}
    headers, body = make_event("evt_foreign", "payment_intent.succeeded", payload, now)

    assert reconciler.handle(headers, body, now=now).status == "ignored"
    assert len(_processed_logs("evt_foreign")) == 1


def test_unhandled_event_type_is_recorded_and_ignored(reconciler, seeded, now):
    headers, body = make_event("evt_other", "customer.created", {"id": "cus_1"}, now)

    assert reconciler.handle(headers, body, now=now).status == "ignored"
    assert reconciler.handle(headers, body, now=now).status == "duplicate"


def test_subscription_updated_applies_processor_state(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    period_end = now + timedelta(days=40)
    payload = subscription_payload("sub_remote", price_id="price_business", period_end=period_end, cancel_at_period_end=True)
    headers, body = make_event("evt_upd", "customer.subscription.updated", payload, now + timedelta(hours=2))

    assert reconciler.handle(headers, body, now=now).status == "processed"

    updated = _subscription(local.id)
    assert updated.cancel_at_period_end is True
    assert updated.end_date == period_end
    assert updated.plan_id == "business"
    assert updated.last_event_at == now + timedelta(hours=2)
    with get_db_session() as session:
        assert repo.get_company(session, "co_acme").plan_id == "business"


def test_out_of_order_subscription_update_is_stale(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    newer = subscription_payload("sub_remote", price_id="price_pro", cancel_at_period_end=True)
    older = subscription_payload("sub_remote", price_id="price_pro", cancel_at_period_end=False)

    reconciler.handle(*make_event("evt_newer", "customer.subscription.updated", newer, now + timedelta(hours=2)), now=now)
    outcome = reconciler.handle(*make_event("evt_older", "customer.subscription.updated", older, now + timedelta(hours=1)), now=now)

    assert outcome.status == "stale"
    assert _subscription(local.id).cancel_at_period_end is True
    assert _processed_logs("evt_older")[0].status == "stale"


def test_subscription_updated_to_canceled_expires_row(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    payload = subscription_payload("sub_remote", status="canceled", price_id="price_pro")

    reconciler.handle(*make_event("evt_canceled", "customer.subscription.updated", payload, now + timedelta(hours=1)), now=now)

    assert _subscription(local.id).is_expired is True
    with get_db_session() as session:
        assert repo.get_company(session, "co_acme").plan_id is None


def test_update_for_unknown_subscription_is_ignored(reconciler, seeded, now):
    payload = subscription_payload("sub_unknown")
    outcome = reconciler.handle(*make_event("evt_unknown", "customer.subscription.updated", payload, now), now=now)
    assert outcome.status == "ignored"


def test_deletion_expires_cancelling_subscription_and_replay_is_no_op(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    manager = SubscriptionLifecycleManager(orchestrator)
    manager.cancel_subscription("user_author", immediate=False, now=now + timedelta(days=1))
    assert manager.get_subscription_state("co_acme", now=now + timedelta(days=1)) == SubscriptionState.CANCELLING

    payload = subscription_payload("sub_remote", status="canceled")
    headers, body = make_event("evt_deleted", "customer.subscription.deleted", payload, now + timedelta(days=2))

    assert reconciler.handle(headers, body, now=now + timedelta(days=2)).status == "processed"
    assert _subscription(local.id).is_expired is True
    assert manager.get_subscription_state("co_acme", now=now + timedelta(days=2)) == SubscriptionState.EXPIRED

    assert reconciler.handle(headers, body, now=now + timedelta(days=3)).status == "duplicate"
    # A redelivery under a new event id changes nothing either
    reconciler.handle(*make_event("evt_deleted_2", "customer.subscription.deleted", payload, now + timedelta(days=1)), now=now)
    assert _subscription(local.id).is_expired is True
    assert subscription_transitions_total.value({"transition": "to_expired"}) == 1


def test_invoice_paid_extends_subscription(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    new_end = now + timedelta(days=60)
    invoice = {
        "id": "in_1",
        "customer": "cus_1",
        "subscription": "sub_remote",
        "amount_paid": 1000,
        "currency": "usd",
        "payment_intent": "pi_invoice_1",
        "lines": {"data": [{"period": {"end": int(new_end.timestamp())}}]},
    }

    outcome = reconciler.handle(*make_event("evt_inv_paid", "invoice.payment_succeeded", invoice, now + timedelta(days=29)), now=now)

    assert outcome.status == "processed"
    assert _subscription(local.id).end_date == new_end
    with get_db_session() as session:
        transaction = repo.get_transaction_by_intent(session, "pi_invoice_1")
    assert transaction.payment_type == PaymentType.INVOICE
    assert transaction.status == TransactionStatus.SUCCEEDED
    assert transaction.amount == 1000


def test_invoice_failed_records_failed_transaction(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    with get_db_session() as session:
        customer_id = repo.get_company(session, "co_acme").external_customer_id
    invoice = {
        "id": "in_2",
        "customer": customer_id,
        "subscription": "sub_remote",
        "amount_due": 1000,
        "currency": "usd",
        "payment_intent": "pi_invoice_2",
    }

    assert reconciler.handle(*make_event("evt_inv_failed", "invoice.payment_failed", invoice, now), now=now).status == "processed"

    with get_db_session() as session:
        transaction = repo.get_transaction_by_intent(session, "pi_invoice_2")
    assert transaction.status == TransactionStatus.FAILED
    assert transaction.subscription_id == local.id
    # Dunning is left to the processor
    assert _subscription(local.id).is_expired is False


def test_processing_failure_is_logged_and_retryable(reconciler, orchestrator, gateway, now):
    created = orchestrator.create_payment("user_author", "pro", now=now)
    intent = gateway.complete_intent(created.payment_intent_id)
    payload = intent_payload(intent)
    payload["metadata"]["plan_id"] = "ghost"
    headers, body = make_event("evt_broken", "payment_intent.succeeded", payload, now)

    with pytest.raises(WebhookProcessingFailed) as exc:
        reconciler.handle(headers, body, now=now)
    assert exc.value.retryable is True

    with get_db_session() as session:
        failures = repo.list_logs(session, event=PaymentLogEvent.WEBHOOK_FAILED)
        assert repo.has_event(session, "evt_broken") is False
    assert len(failures) == 1
    assert failures[0].details["event_id"] == "evt_broken"
    assert failures[0].error_code == "PLAN_NOT_FOUND"

    # Not marked as seen, so the processor's retry runs the handler again
    with pytest.raises(WebhookProcessingFailed):
        reconciler.handle(headers, body, now=now)


def _succeeded_intent(orchestrator, gateway, now, plan_id="pro"):
    created = orchestrator.create_payment("user_author", plan_id, now=now)
    return gateway.complete_intent(created.payment_intent_id)


def _settlement_counts():
    with get_db_session() as session:
        return (
            len(repo.list_subscriptions(session, "co_acme")),
            repo.count_transactions(session, "co_acme").get("SUCCEEDED", 0),
            len(repo.list_logs(session, event=PaymentLogEvent.PAYMENT_SUCCESS)),
        )


def test_late_update_for_expired_subscription_leaves_company_plan(reconciler, orchestrator, gateway, now):
    old = _remote_subscription(orchestrator, gateway, now)
    manager = SubscriptionLifecycleManager(orchestrator)
    manager.cancel_subscription("user_author", immediate=True, now=now + timedelta(days=1))
    current = activate(orchestrator, gateway, "business", now + timedelta(days=2))

    payload = subscription_payload(
        "sub_remote", status="canceled", price_id="price_pro", period_end=now + timedelta(days=90)
    )
    outcome = reconciler.handle(
        *make_event("evt_late_upd", "customer.subscription.updated", payload, now + timedelta(days=3)),
        now=now + timedelta(days=3),
    )

    assert outcome.status == "ignored"
    assert _processed_logs("evt_late_upd")[0].status == "ignored_expired"
    with get_db_session() as session:
        assert repo.get_company(session, "co_acme").plan_id == "business"
        assert repo.get_active_subscription(session, "co_acme", now + timedelta(days=3)).id == current.subscription_id
    untouched = _subscription(old.id)
    assert untouched.end_date == old.end_date
    assert untouched.plan_id == "pro"
    assert untouched.last_event_at is None


def test_event_without_created_keeps_ordering_watermark(reconciler, orchestrator, gateway, now):
    local = _remote_subscription(orchestrator, gateway, now)
    applied_at = now + timedelta(hours=2)
    first = subscription_payload("sub_remote", price_id="price_pro", cancel_at_period_end=True)
    reconciler.handle(*make_event("evt_timed", "customer.subscription.updated", first, applied_at), now=now)

    body = json.dumps({
        "id": "evt_untimed",
        "type": "customer.subscription.updated",
        "data": {"object": subscription_payload("sub_remote", price_id="price_pro", cancel_at_period_end=False)},
    }).encode()
    outcome = reconciler.handle({"stripe-signature": sign(body)}, body, now=now)

    assert outcome.status == "processed"
    updated = _subscription(local.id)
    assert updated.cancel_at_period_end is False
    assert updated.last_event_at == applied_at


@pytest.mark.parametrize(
    "event",
    [
        {"type": "payment_intent.succeeded", "data": {"object": {}}},
        {"id": "evt_untyped", "data": {"object": {}}},
        {"id": "evt_bad_object", "type": "payment_intent.succeeded", "data": {"object": "pi_1"}},
        ["not", "an", "event"],
    ],
)
def test_malformed_signed_payload_is_rejected(reconciler, seeded, now, event):
    body = json.dumps(event).encode()

    with pytest.raises(WebhookSignatureError) as exc:
        reconciler.handle({"stripe-signature": sign(body)}, body, now=now)

    assert exc.value.status_code == 400
    with get_db_session() as session:
        assert repo.list_logs(session, event=PaymentLogEvent.WEBHOOK_PROCESSED) == []


def test_webhook_losing_settlement_race_records_already_applied(reconciler, orchestrator, gateway, monkeypatch, now):
    intent = _succeeded_intent(orchestrator, gateway, now)
    winner = orchestrator.confirm_payment(intent.id, now=now)

    # The webhook checked storage before the confirmation committed
    real_settled_result = orchestrator.settled_result
    reads = []

    def settled_result_after_first_read(payment_intent_id, session=None):
        reads.append(payment_intent_id)
        if len(reads) == 1:
            return None
        return real_settled_result(payment_intent_id, session)

    monkeypatch.setattr(orchestrator, "settled_result", settled_result_after_first_read)

    headers, body = make_event("evt_race_settle", "payment_intent.succeeded", intent_payload(intent), now)
    outcome = reconciler.handle(headers, body, now=now)

    assert outcome.status == "processed"
    assert len(reads) == 2
    logs = _processed_logs("evt_race_settle")
    assert len(logs) == 1 and logs[0].status == "already_applied"
    assert _settlement_counts() == (1, 1, 1)
    with get_db_session() as session:
        assert repo.get_active_subscription(session, "co_acme", now).id == winner.subscription_id
        assert repo.list_logs(session, event=PaymentLogEvent.PAYMENT_CONFLICT) == []


def test_concurrent_delivery_of_same_event_counts_as_duplicate(reconciler, orchestrator, gateway, monkeypatch, now):
    intent = _succeeded_intent(orchestrator, gateway, now)
    headers, body = make_event("evt_race_dup", "payment_intent.succeeded", intent_payload(intent), now)
    assert reconciler.handle(headers, body, now=now).status == "processed"

    # The second delivery passed the dedupe check before the first committed
    real_has_event = reconciler.repository.has_event
    checks = []

    def has_event_after_first_check(session, external_event_id):
        checks.append(external_event_id)
        if len(checks) == 1:
            return False
        return real_has_event(session, external_event_id)

    monkeypatch.setattr(reconciler.repository, "has_event", has_event_after_first_check)

    outcome = reconciler.handle(headers, body, now=now + timedelta(seconds=1))

    assert outcome.status == "duplicate"
    assert len(checks) == 2
    assert len(_processed_logs("evt_race_dup")) == 1
    assert _settlement_counts() == (1, 1, 1)
    with get_db_session() as session:
        assert repo.list_logs(session, event=PaymentLogEvent.WEBHOOK_FAILED) == []
