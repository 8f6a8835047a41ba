"""
Webhook reconciler.

Applies processor notifications to local state, at most once per event:
1. Verify signature
2. Skip events already in the payment log
3. Apply the change and write the log entry in one transaction
4. Skip subscription changes older than the last one applied

A processing failure rolls back, is logged without the event id (so the
processor's retry is not blocked) and surfaces as a retryable 5xx.
"""
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paybridge.core.database import get_db_session
from paybridge.core.errors import AppError, WebhookProcessingFailed, WebhookSignatureError
from paybridge.core.logging import log_event
from paybridge.core.metrics import subscription_transitions_total, webhook_events_total
from paybridge.features.billing.gateway import (
    GatewayEvent,
    GatewayWebhookError,
    intent_from_payload,
    subscription_from_payload,
    timestamp_to_datetime,
)
from paybridge.features.billing.orchestrator import PaymentOrchestrator
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.models.billing import (
    CompanySubscription,
    PaymentLogEvent,
    PaymentType,
    TransactionStatus,
    WebhookOutcome,
    utc_now,
)


TERMINAL_SUBSCRIPTION_STATUSES = {"canceled", "incomplete_expired"}


class WebhookReconciler:
    def __init__(self, orchestrator: PaymentOrchestrator, repository: Optional[SubscriptionRepository] = None):
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway
        self.catalog = orchestrator.catalog
        self.repository = repository or orchestrator.repository
        self._handlers: Dict[str, Callable[[GatewayEvent, datetime], str]] = {
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_invoice_failed,
            "invoice.payment_succeeded": self._on_invoice_succeeded,
        }

    def handle(self, headers: Dict[str, str], body: bytes, now: Optional[datetime] = None) -> WebhookOutcome:
        """Verify, deduplicate and apply one notification."""
        now = now or utc_now()
        try:
            event = self.gateway.construct_event(headers, body)
        except GatewayWebhookError as exc:
            webhook_events_total.inc(labels={"type": "unknown", "outcome": "invalid_signature"})
            log_event("warning", "webhook.invalid_signature", error_code=WebhookSignatureError.code, extra={"error": exc})
            raise WebhookSignatureError("Invalid webhook signature") from exc

        with get_db_session() as session:
            if self.repository.has_event(session, event.id):
                return self._outcome(event, "duplicate")

        handler = self._handlers.get(event.type, self._on_ignored)
        try:
            status = handler(event, now)
        except IntegrityError as exc:
            with get_db_session() as session:
                if self.repository.has_event(session, event.id):
                    return self._outcome(event, "duplicate")
            self._record_failure(event, exc, now)
            raise WebhookProcessingFailed(f"Webhook {event.id} could not be applied") from exc
        except Exception as exc:
            self._record_failure(event, exc, now)
            raise WebhookProcessingFailed(f"Webhook {event.id} could not be applied") from exc
        return self._outcome(event, status)

    def _outcome(self, event: GatewayEvent, status: str) -> WebhookOutcome:
        webhook_events_total.inc(labels={"type": event.type, "outcome": status})
        log_event("info", "webhook.handled", event_type=event.type, extra={"event_id": event.id, "status": status})
        return WebhookOutcome(event_id=event.id, event_type=event.type, status=status)

    def _log_event(self, session: Session, event: GatewayEvent, now: datetime, status: str, **fields) -> None:
        self.repository.append_log(
            session,
            PaymentLogEvent.WEBHOOK_PROCESSED,
            now=now,
            external_event_id=event.id,
            external_event_type=event.type,
            event_created_at=event.created,
            status=status,
            **fields,
        )

    def _record_failure(self, event: GatewayEvent, exc: Exception, now: datetime) -> None:
        code = exc.code if isinstance(exc, AppError) else WebhookProcessingFailed.code
        with get_db_session() as session:
            self.repository.append_log(
                session,
                PaymentLogEvent.WEBHOOK_FAILED,
                now=now,
                external_event_type=event.type,
                event_created_at=event.created,
                status="FAILED",
                error_code=code,
                error_message=str(exc)[:500],
                details={"event_id": event.id},
            )
        webhook_events_total.inc(labels={"type": event.type, "outcome": "failed"})
        log_event("error", "webhook.failed", event_type=event.type, error_code=code, extra={"event_id": event.id, "error": exc})

    def _is_stale(self, subscription: CompanySubscription, event: GatewayEvent) -> bool:
        return (
            subscription.last_event_at is not None
            and event.created is not None
            and event.created < subscription.last_event_at
        )

    # Handlers return the outcome status recorded for the event

    def _on_ignored(self, event: GatewayEvent, now: datetime) -> str:
        with get_db_session() as session:
            self._log_event(session, event, now, "ignored")
        return "ignored"

    def _on_payment_succeeded(self, event: GatewayEvent, now: datetime) -> str:
        intent = intent_from_payload(event.data)
        if not intent.metadata.get("company_id"):
            # Not created by this service
            return self._on_ignored(event, now)

        if self.orchestrator.settled_result(intent.id) is not None:
            with get_db_session() as session:
                self._log_event(session, event, now, "already_applied", company_id=intent.metadata.get("company_id"))
            return "processed"

        self.orchestrator.sync_processor_for_upgrade(intent)
        try:
            with get_db_session() as session:
                result = self.orchestrator.apply_settlement(session, intent, now)
                self._log_event(
                    session,
                    event,
                    now,
                    "settled",
                    company_id=intent.metadata.get("company_id"),
                    subscription_id=result.subscription_id,
                    transaction_id=result.transaction_id,
                    amount=intent.amount,
                    currency=intent.currency,
                )
            return "processed"
        except IntegrityError:
            with get_db_session() as session:
                if self.repository.has_event(session, event.id):
                    return "duplicate"
                settled = self.orchestrator.settled_result(intent.id, session)
                status = "already_applied" if settled else "conflict"
                if settled is None:
                    self.repository.append_log(
                        session,
                        PaymentLogEvent.PAYMENT_CONFLICT,
                        now=now,
                        company_id=intent.metadata.get("company_id"),
                        plan_id=intent.metadata.get("plan_id"),
                        amount=intent.amount,
                        currency=intent.currency,
                        error_code="ACTIVE_SUBSCRIPTION_EXISTS",
                        error_message="Payment succeeded but another subscription is already active",
                        details={"payment_intent_id": intent.id},
                    )
                self._log_event(session, event, now, status, company_id=intent.metadata.get("company_id"))
            return "processed" if settled else "conflict"

    def _on_payment_failed(self, event: GatewayEvent, now: datetime) -> str:
        intent = intent_from_payload(event.data)
        with get_db_session() as session:
            transaction = self.orchestrator.record_failure(session, intent, now)
            self._log_event(
                session,
                event,
                now,
                "failed_recorded",
                company_id=intent.metadata.get("company_id"),
                transaction_id=transaction.id if transaction else None,
            )
        return "processed"

    def _on_subscription_updated(self, event: GatewayEvent, now: datetime) -> str:
        remote = subscription_from_payload(event.data)
        with get_db_session() as session:
            local = self.repository.get_subscription_by_external_id(session, remote.id)
            if local is None:
                self._log_event(session, event, now, "ignored")
                return "ignored"
            if self._is_stale(local, event):
                self._log_event(session, event, now, "stale", company_id=local.company_id, subscription_id=local.id)
                return "stale"
            # Only one unexpired row per company, so a live row owns Company.plan_id
            if local.is_expired:
                self._log_event(session, event, now, "ignored_expired", company_id=local.company_id, subscription_id=local.id)
                return "ignored"

            values = {
                "cancel_at_period_end": remote.cancel_at_period_end,
                "last_event_at": _watermark(local, event),
            }
            if remote.current_period_end is not None:
                values["end_date"] = remote.current_period_end
            if remote.price_id:
                plan = self.catalog.find_by_external_price_id(remote.price_id, session=session)
                if plan is not None and plan.id != local.plan_id:
                    values["plan_id"] = plan.id
                    self.repository.set_company_plan(session, local.company_id, plan.id)
            if remote.status in TERMINAL_SUBSCRIPTION_STATUSES:
                values["is_expired"] = True
                self.repository.set_company_plan(session, local.company_id, None)
                subscription_transitions_total.inc(labels={"transition": "to_expired"})

            self.repository.update_subscription(session, local.id, **values)
            self._log_event(
                session,
                event,
                now,
                remote.status or "updated",
                company_id=local.company_id,
                subscription_id=local.id,
                plan_id=values.get("plan_id", local.plan_id),
            )
        return "processed"

    def _on_subscription_deleted(self, event: GatewayEvent, now: datetime) -> str:
        remote = subscription_from_payload(event.data)
        with get_db_session() as session:
            local = self.repository.get_subscription_by_external_id(session, remote.id)
            if local is None:
                self._log_event(session, event, now, "ignored")
                return "ignored"
            # Deletion is terminal, so it applies regardless of ordering
            if not local.is_expired:
                self.repository.update_subscription(
                    session,
                    local.id,
                    is_expired=True,
                    cancel_at_period_end=False,
                    last_event_at=_watermark(local, event),
                )
                self.repository.set_company_plan(session, local.company_id, None)
                subscription_transitions_total.inc(labels={"transition": "to_expired"})
            self._log_event(session, event, now, "deleted", company_id=local.company_id, subscription_id=local.id)
        return "processed"

    def _on_invoice_failed(self, event: GatewayEvent, now: datetime) -> str:
        invoice = event.data
        with get_db_session() as session:
            company = self.repository.get_company_by_customer(session, invoice.get("customer") or "")
            if company is None:
                self._log_event(session, event, now, "ignored")
                return "ignored"
            local = None
            if invoice.get("subscription"):
                local = self.repository.get_subscription_by_external_id(session, invoice["subscription"])
            transaction = self.repository.insert_transaction(
                session,
                company_id=company.id,
                plan_id=local.plan_id if local else company.plan_id,
                subscription_id=local.id if local else None,
                amount=int(invoice.get("amount_due") or 0),
                currency=invoice.get("currency") or "usd",
                status=TransactionStatus.FAILED,
                payment_type=PaymentType.INVOICE,
                external_payment_intent_id=invoice.get("payment_intent"),
                failure_code="INVOICE_PAYMENT_FAILED",
            )
            self._log_event(
                session,
                event,
                now,
                "FAILED",
                company_id=company.id,
                subscription_id=local.id if local else None,
                transaction_id=transaction.id,
                amount=transaction.amount,
                currency=transaction.currency,
                error_code="INVOICE_PAYMENT_FAILED",
                error_message=f"Invoice {invoice.get('id')} payment failed",
            )
        return "processed"

    def _on_invoice_succeeded(self, event: GatewayEvent, now: datetime) -> str:
        invoice = event.data
        with get_db_session() as session:
            external_id = invoice.get("subscription")
            local = self.repository.get_subscription_by_external_id(session, external_id) if external_id else None
            if local is None:
                self._log_event(session, event, now, "ignored")
                return "ignored"
            if self._is_stale(local, event):
                self._log_event(session, event, now, "stale", company_id=local.company_id, subscription_id=local.id)
                return "stale"
            if local.is_expired:
                self._log_event(session, event, now, "ignored_expired", company_id=local.company_id, subscription_id=local.id)
                return "ignored"

            period_end = _invoice_period_end(invoice)
            values = {"last_event_at": _watermark(local, event)}
            if period_end is not None and period_end > local.end_date:
                values["end_date"] = period_end
            self.repository.update_subscription(session, local.id, **values)
            self.repository.insert_transaction(
                session,
                company_id=local.company_id,
                plan_id=local.plan_id,
                subscription_id=local.id,
                amount=int(invoice.get("amount_paid") or 0),
                currency=invoice.get("currency") or "usd",
                status=TransactionStatus.SUCCEEDED,
                payment_type=PaymentType.INVOICE,
                external_payment_intent_id=invoice.get("payment_intent"),
            )
            self._log_event(
                session,
                event,
                now,
                "renewed",
                company_id=local.company_id,
                subscription_id=local.id,
                amount=int(invoice.get("amount_paid") or 0),
                currency=invoice.get("currency") or "usd",
            )
        return "processed"


def _invoice_period_end(invoice: Dict) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        period = lines[0].get("period") or {}
        if period.get("end"):
            return timestamp_to_datetime(period["end"])
    if invoice.get("period_end"):
        return timestamp_to_datetime(invoice["period_end"])
    return None


def _watermark(subscription: CompanySubscription, event: GatewayEvent) -> Optional[datetime]:
    """Latest event time applied to `subscription`; events without a time keep it."""
    return max(filter(None, [subscription.last_event_at, event.created]), default=None)
