"""
Payment orchestrator.

Coordinates a purchase or plan change end to end:
- role and plan validation
- proration against the active subscription
- payment intents at the processor
- pending transactions and the payment log
- settlement of a succeeded intent into a subscription

Settlement is shared with the webhook reconciler so a confirmation and a
notification for the same intent converge on one outcome.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paybridge.core.config import settings
from paybridge.core.database import get_db_session
from paybridge.core.errors import (
    ActiveSubscriptionExists,
    AppError,
    AuthorizationError,
    CompanyNotFound,
    CustomerCreationFailed,
    PaymentIntentFailed,
    PaymentIntentIncomplete,
    PaymentIntentNotFound,
    PaymentProcessingFailed,
    PlanNotFound,
    SubscriptionNotFound,
    ValidationError,
)
from paybridge.core.logging import log_event
from paybridge.core.metrics import payment_confirmations_total, payment_intents_total, subscription_transitions_total
from paybridge.features.billing.gateway import GatewayError, GatewayIntent, PaymentGateway
from paybridge.features.billing.proration import calculate_proration
from paybridge.features.billing.repository import SubscriptionRepository, new_id
from paybridge.features.plans.catalog import PlanCatalog
from paybridge.features.subscriptions.access import AccountDirectory, DatabaseAccountDirectory
from paybridge.models.billing import (
    Company,
    CompanySubscription,
    ConfirmationResult,
    PaymentLogEvent,
    PaymentResult,
    PaymentType,
    Plan,
    Role,
    RoleType,
    Transaction,
    TransactionStatus,
    utc_now,
)


class PaymentOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        repository: Optional[SubscriptionRepository] = None,
        catalog: Optional[PlanCatalog] = None,
        directory: Optional[AccountDirectory] = None,
    ):
        self.gateway = gateway
        self.repository = repository or SubscriptionRepository()
        self.catalog = catalog or PlanCatalog(gateway)
        self.directory = directory or DatabaseAccountDirectory()

    # Shared lookups

    def resolve_author(self, user_id: str) -> Role:
        role = self.directory.get_user_selected_role(user_id)
        if role is None or role.type != RoleType.AUTHOR:
            raise AuthorizationError("Only company authors can manage billing")
        return role

    def get_company(self, company_id: str) -> Company:
        with get_db_session() as session:
            company = self.repository.get_company(session, company_id)
        if company is None:
            raise CompanyNotFound(f"Company {company_id} not found")
        return company

    def get_purchasable_plan(self, plan_id: str) -> Plan:
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFound(f"Plan {plan_id} is not available")
        return plan

    def ensure_customer(self, company: Company, user_id: str) -> str:
        """Processor customer for the company, created at most once."""
        if company.external_customer_id:
            return company.external_customer_id
        user = self.directory.get_user(user_id)
        try:
            customer_id = self.gateway.create_customer(
                company.id,
                email=user.email if user else None,
                name=company.name,
            )
        except GatewayError as exc:
            log_event("error", "billing.customer_failed", user_id=user_id, company_id=company.id, error_code=exc.code)
            raise CustomerCreationFailed("Could not create billing customer") from exc
        with get_db_session() as session:
            return self.repository.set_customer_id_if_missing(session, company.id, customer_id)

    # create_payment

    def create_payment(self, user_id: str, plan_id: str, now: Optional[datetime] = None) -> PaymentResult:
        """
        Start a purchase or plan change for the user's company.

        Returns a client secret when the customer has to pay, or an applied
        result when nothing needs collecting (free plan, non-positive proration).

        Raises:
            AuthorizationError: caller is not the company author
            PlanNotFound / InvalidPlanId: plan cannot be bought
            ActiveSubscriptionExists: already subscribed to this plan
            PaymentProcessingFailed: processor or storage failure (retryable)
        """
        now = now or utc_now()
        try:
            role = self.resolve_author(user_id)
            plan = self.get_purchasable_plan(plan_id)
            company = self.get_company(role.company_id)
            with get_db_session() as session:
                active = self.repository.get_active_subscription(session, company.id, now)

            if active is None:
                if plan.price == 0:
                    return self._activate_free_plan(user_id, company, plan, now)
                return self._start_new_subscription(user_id, company, plan, now)

            if active.plan_id == plan.id:
                raise ActiveSubscriptionExists("Company already has an active subscription to this plan")

            current_plan = self.catalog.get_plan(active.plan_id)
            amount = calculate_proration(active, current_plan, plan, now=now)
            if amount <= 0:
                return self._apply_immediate_upgrade(user_id, company, active, plan, now)
            return self._start_upgrade_payment(user_id, company, active, plan, amount, now)
        except AppError:
            raise
        except Exception as exc:
            log_event(
                "error",
                "payment.create_failed",
                user_id=user_id,
                error_code=PaymentProcessingFailed.code,
                extra={"plan_id": plan_id, "error": exc},
            )
            raise PaymentProcessingFailed() from exc

    def _activate_free_plan(self, user_id: str, company: Company, plan: Plan, now: datetime) -> PaymentResult:
        try:
            with get_db_session() as session:
                self.repository.expire_lapsed(session, now, company_id=company.id)
                subscription = self.repository.insert_subscription(
                    session,
                    company_id=company.id,
                    plan_id=plan.id,
                    start_date=now,
                    end_date=now + timedelta(days=settings.BILLING_PERIOD_DAYS),
                )
                transaction = self.repository.insert_transaction(
                    session,
                    company_id=company.id,
                    user_id=user_id,
                    plan_id=plan.id,
                    subscription_id=subscription.id,
                    amount=0,
                    currency=plan.currency,
                    status=TransactionStatus.SUCCEEDED,
                    payment_type=PaymentType.FREE_PLAN,
                )
                self.repository.set_company_plan(session, company.id, plan.id)
                self.repository.append_log(
                    session,
                    PaymentLogEvent.SUBSCRIPTION_CREATED,
                    now=now,
                    company_id=company.id,
                    user_id=user_id,
                    plan_id=plan.id,
                    subscription_id=subscription.id,
                    transaction_id=transaction.id,
                    amount=0,
                    currency=plan.currency,
                    status=TransactionStatus.SUCCEEDED.value,
                )
        except IntegrityError as exc:
            raise ActiveSubscriptionExists("Company already has an active subscription") from exc

        subscription_transitions_total.inc(labels={"transition": "none_to_active"})
        log_event("info", "subscription.free_activated", user_id=user_id, company_id=company.id, subscription_id=subscription.id)
        return PaymentResult(
            amount=0,
            currency=plan.currency,
            subscription_id=subscription.id,
            requires_payment=False,
        )

    def _start_new_subscription(self, user_id: str, company: Company, plan: Plan, now: datetime) -> PaymentResult:
        customer_id = self.ensure_customer(company, user_id)
        transaction_id = new_id()
        intent = self.gateway.create_payment_intent(
            amount=plan.price,
            currency=plan.currency,
            customer_id=customer_id,
            metadata={
                "type": PaymentType.NEW_SUBSCRIPTION.value,
                "plan_id": plan.id,
                "company_id": company.id,
                "user_id": user_id,
                "transaction_id": transaction_id,
            },
        )
        with get_db_session() as session:
            self.repository.insert_transaction(
                session,
                transaction_id=transaction_id,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                amount=plan.price,
                currency=plan.currency,
                status=TransactionStatus.PENDING,
                payment_type=PaymentType.NEW_SUBSCRIPTION,
                external_payment_intent_id=intent.id,
            )
            self.repository.append_log(
                session,
                PaymentLogEvent.PAYMENT_INTENT_CREATED,
                now=now,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                transaction_id=transaction_id,
                amount=plan.price,
                currency=plan.currency,
                status=TransactionStatus.PENDING.value,
                details={"payment_intent_id": intent.id},
            )

        payment_intents_total.inc(labels={"type": PaymentType.NEW_SUBSCRIPTION.value})
        log_event("info", "payment.intent_created", user_id=user_id, company_id=company.id, payment_intent_id=intent.id)
        return PaymentResult(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            amount=plan.price,
            currency=plan.currency,
        )

    def _apply_immediate_upgrade(
        self,
        user_id: str,
        company: Company,
        active: CompanySubscription,
        plan: Plan,
        now: datetime,
    ) -> PaymentResult:
        if active.external_subscription_id and active.external_item_id and plan.external_price_id:
            self.gateway.update_subscription_price(
                active.external_subscription_id,
                active.external_item_id,
                plan.external_price_id,
                proration_behavior="none",
            )

        with get_db_session() as session:
            self.repository.update_subscription(session, active.id, plan_id=plan.id, updated_at=now)
            self.repository.set_company_plan(session, company.id, plan.id)
            transaction = self.repository.insert_transaction(
                session,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                subscription_id=active.id,
                amount=0,
                currency=plan.currency,
                status=TransactionStatus.SUCCEEDED,
                payment_type=PaymentType.IMMEDIATE_UPGRADE,
            )
            self.repository.append_log(
                session,
                PaymentLogEvent.SUBSCRIPTION_UPGRADED_IMMEDIATE,
                now=now,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                subscription_id=active.id,
                transaction_id=transaction.id,
                amount=0,
                currency=plan.currency,
                status=TransactionStatus.SUCCEEDED.value,
                details={"previous_plan_id": active.plan_id},
            )

        subscription_transitions_total.inc(labels={"transition": "plan_changed"})
        log_event("info", "subscription.upgraded_immediate", user_id=user_id, company_id=company.id, subscription_id=active.id)
        return PaymentResult(
            amount=0,
            currency=plan.currency,
            is_upgrade=True,
            proration_amount=0,
            subscription_id=active.id,
            requires_payment=False,
        )

    def _start_upgrade_payment(
        self,
        user_id: str,
        company: Company,
        active: CompanySubscription,
        plan: Plan,
        amount: int,
        now: datetime,
    ) -> PaymentResult:
        customer_id = self.ensure_customer(company, user_id)
        transaction_id = new_id()
        intent = self.gateway.create_payment_intent(
            amount=amount,
            currency=plan.currency,
            customer_id=customer_id,
            metadata={
                "type": PaymentType.SUBSCRIPTION_UPGRADE.value,
                "plan_id": plan.id,
                "company_id": company.id,
                "user_id": user_id,
                "transaction_id": transaction_id,
                "current_subscription_id": active.id,
                "proration_amount": str(amount),
            },
        )
        with get_db_session() as session:
            self.repository.insert_transaction(
                session,
                transaction_id=transaction_id,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                subscription_id=active.id,
                amount=amount,
                currency=plan.currency,
                status=TransactionStatus.PENDING,
                payment_type=PaymentType.SUBSCRIPTION_UPGRADE,
                external_payment_intent_id=intent.id,
            )
            self.repository.append_log(
                session,
                PaymentLogEvent.SUBSCRIPTION_UPGRADE_INTENT_CREATED,
                now=now,
                company_id=company.id,
                user_id=user_id,
                plan_id=plan.id,
                subscription_id=active.id,
                transaction_id=transaction_id,
                amount=amount,
                currency=plan.currency,
                status=TransactionStatus.PENDING.value,
                details={"payment_intent_id": intent.id, "previous_plan_id": active.plan_id},
            )

        payment_intents_total.inc(labels={"type": PaymentType.SUBSCRIPTION_UPGRADE.value})
        log_event("info", "payment.upgrade_intent_created", user_id=user_id, company_id=company.id, payment_intent_id=intent.id)
        return PaymentResult(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            amount=amount,
            currency=plan.currency,
            is_upgrade=True,
            proration_amount=amount,
            subscription_id=active.id,
        )

    # confirm_payment

    def confirm_payment(
        self, payment_intent_id: str, now: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> ConfirmationResult:
        """
        Settle a payment the client reports as complete.

        Safe to call repeatedly and concurrently with the matching webhook:
        a second call returns the first outcome without side effects.
        With `user_id`, the caller must be an author of the paying company.
        """
        if not payment_intent_id or not str(payment_intent_id).strip():
            raise ValidationError("payment_intent_id is required")
        now = now or utc_now()
        company_id = self.resolve_author(user_id).company_id if user_id is not None else None
        try:
            if company_id is not None:
                with get_db_session() as session:
                    local = self.repository.get_transaction_by_intent(session, payment_intent_id)
                if local is not None:
                    self._check_payer(company_id, local.company_id, payment_intent_id)

            prior = self.settled_result(payment_intent_id)
            if prior is not None:
                payment_confirmations_total.inc(labels={"outcome": "already_applied"})
                return prior

            intent = self.gateway.retrieve_payment_intent(payment_intent_id)
            if intent is None:
                raise PaymentIntentNotFound(f"Payment intent {payment_intent_id} not found")
            if company_id is not None:
                self._check_payer(company_id, intent.metadata.get("company_id"), payment_intent_id)

            if intent.succeeded:
                result = self.settle(intent, now)
                payment_confirmations_total.inc(labels={"outcome": "succeeded"})
                return result

            if intent.failed:
                with get_db_session() as session:
                    self.record_failure(session, intent, now)
                payment_confirmations_total.inc(labels={"outcome": "failed"})
                raise PaymentIntentFailed(intent.last_error_message or "Payment failed")

            payment_confirmations_total.inc(labels={"outcome": "incomplete"})
            raise PaymentIntentIncomplete(f"Payment is not complete (status: {intent.status})")
        except AppError:
            raise
        except Exception as exc:
            log_event(
                "error",
                "payment.confirm_failed",
                payment_intent_id=payment_intent_id,
                error_code=PaymentProcessingFailed.code,
                extra={"error": exc},
            )
            raise PaymentProcessingFailed() from exc

    def _check_payer(self, company_id: str, paying_company_id: Optional[str], payment_intent_id: str) -> None:
        if paying_company_id != company_id:
            log_event(
                "warning",
                "payment.confirm_forbidden",
                company_id=company_id,
                payment_intent_id=payment_intent_id,
                error_code=AuthorizationError.code,
            )
            raise AuthorizationError("Payment belongs to another company")

    def settled_result(self, payment_intent_id: str, session: Optional[Session] = None) -> Optional[ConfirmationResult]:
        if session is None:
            with get_db_session() as own:
                return self.settled_result(payment_intent_id, own)
        prior = self.repository.get_transaction_by_intent(session, payment_intent_id, TransactionStatus.SUCCEEDED)
        if prior is None or prior.subscription_id is None:
            return None
        return _result_from(prior, already_applied=True)

    # settlement

    def settle(self, intent: GatewayIntent, now: datetime) -> ConfirmationResult:
        """Apply a succeeded intent in its own transaction."""
        self.sync_processor_for_upgrade(intent)
        try:
            with get_db_session() as session:
                result = self.apply_settlement(session, intent, now)
        except IntegrityError:
            return self.resolve_conflict(intent, now)
        log_event(
            "info",
            "payment.settled",
            company_id=intent.metadata.get("company_id"),
            subscription_id=result.subscription_id,
            payment_intent_id=intent.id,
        )
        return result

    def sync_processor_for_upgrade(self, intent: GatewayIntent) -> None:
        """Move the processor subscription to the new price for paid upgrades.

        Runs outside the database transaction. The proration was collected by
        the intent itself, so the processor must not prorate again.
        """
        if intent.metadata.get("type") != PaymentType.SUBSCRIPTION_UPGRADE.value:
            return
        current_id = intent.metadata.get("current_subscription_id")
        if not current_id:
            return
        with get_db_session() as session:
            current = self.repository.get_subscription(session, current_id)
        if current is None or not (current.external_subscription_id and current.external_item_id):
            return
        plan = self.catalog.get_plan(intent.metadata["plan_id"])
        if not plan.external_price_id:
            return
        self.gateway.update_subscription_price(
            current.external_subscription_id,
            current.external_item_id,
            plan.external_price_id,
            proration_behavior="none",
        )

    def apply_settlement(self, session: Session, intent: GatewayIntent, now: datetime) -> ConfirmationResult:
        """Database half of settlement. Raises IntegrityError on a lost race."""
        metadata = intent.metadata
        company_id = metadata.get("company_id")
        plan_id = metadata.get("plan_id")
        if not company_id or not plan_id:
            raise ValidationError(f"Payment intent {intent.id} is missing company or plan metadata")
        payment_type = _payment_type(metadata.get("type"))
        plan = self.catalog.get_plan(plan_id, session=session)

        transaction = self.repository.transition_transaction(session, intent.id, TransactionStatus.SUCCEEDED)
        if transaction is None:
            transaction = self.repository.insert_transaction(
                session,
                company_id=company_id,
                user_id=metadata.get("user_id"),
                plan_id=plan.id,
                amount=intent.amount,
                currency=intent.currency,
                status=TransactionStatus.SUCCEEDED,
                payment_type=payment_type,
                external_payment_intent_id=intent.id,
            )

        self.repository.expire_lapsed(session, now, company_id=company_id)

        if payment_type == PaymentType.SUBSCRIPTION_UPGRADE:
            current = self.repository.get_subscription(session, metadata.get("current_subscription_id") or "")
            if current is None or not current.is_active(now):
                raise SubscriptionNotFound("Subscription being upgraded is no longer active")
            subscription = self.repository.update_subscription(session, current.id, plan_id=plan.id, updated_at=now)
            transition = "plan_changed"
        else:
            subscription = self.repository.insert_subscription(
                session,
                company_id=company_id,
                plan_id=plan.id,
                start_date=now,
                end_date=now + timedelta(days=settings.BILLING_PERIOD_DAYS),
            )
            transition = "pending_to_active"

        self.repository.attach_subscription(session, transaction.id, subscription.id)
        self.repository.set_company_plan(session, company_id, plan.id)
        self.repository.append_log(
            session,
            PaymentLogEvent.PAYMENT_SUCCESS,
            now=now,
            company_id=company_id,
            user_id=metadata.get("user_id"),
            plan_id=plan.id,
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            amount=intent.amount,
            currency=intent.currency,
            status=TransactionStatus.SUCCEEDED.value,
            details={"payment_intent_id": intent.id, "type": payment_type.value},
        )
        subscription_transitions_total.inc(labels={"transition": transition})
        return ConfirmationResult(
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            plan_id=plan.id,
            amount=intent.amount,
            currency=intent.currency,
        )

    def resolve_conflict(self, intent: GatewayIntent, now: datetime, external_event_id: Optional[str] = None) -> ConfirmationResult:
        """Re-read after a unique-constraint conflict.

        If the other writer settled this intent its result wins; otherwise
        the company gained a different active subscription in the meantime.
        """
        with get_db_session() as session:
            prior = self.settled_result(intent.id, session)
            if prior is None:
                self.repository.append_log(
                    session,
                    PaymentLogEvent.PAYMENT_CONFLICT,
                    now=now,
                    company_id=intent.metadata.get("company_id"),
                    user_id=intent.metadata.get("user_id"),
                    plan_id=intent.metadata.get("plan_id"),
                    amount=intent.amount,
                    currency=intent.currency,
                    error_code=ActiveSubscriptionExists.code,
                    error_message="Payment succeeded but another subscription is already active",
                    details={"payment_intent_id": intent.id},
                )
        if prior is not None:
            return prior
        log_event(
            "error",
            "payment.conflict",
            company_id=intent.metadata.get("company_id"),
            payment_intent_id=intent.id,
            error_code=ActiveSubscriptionExists.code,
        )
        raise ActiveSubscriptionExists("Company already has an active subscription")

    def record_failure(self, session: Session, intent: GatewayIntent, now: datetime, **log_fields) -> Optional[Transaction]:
        """Mark the pending transaction FAILED and log it. No-op on the row if already terminal."""
        failure_code = intent.last_error_code or PaymentIntentFailed.code
        transaction = self.repository.transition_transaction(
            session,
            intent.id,
            TransactionStatus.FAILED,
            failure_code=failure_code,
        )
        self.repository.append_log(
            session,
            PaymentLogEvent.PAYMENT_FAILURE,
            now=now,
            company_id=intent.metadata.get("company_id"),
            user_id=intent.metadata.get("user_id"),
            plan_id=intent.metadata.get("plan_id"),
            transaction_id=transaction.id if transaction else None,
            amount=intent.amount,
            currency=intent.currency,
            status=TransactionStatus.FAILED.value,
            error_code=failure_code,
            error_message=intent.last_error_message,
            details={"payment_intent_id": intent.id, "intent_status": intent.status},
            **log_fields,
        )
        log_event(
            "warning",
            "payment.failed",
            company_id=intent.metadata.get("company_id"),
            payment_intent_id=intent.id,
            error_code=failure_code,
        )
        return transaction


def _payment_type(value: Optional[str]) -> PaymentType:
    if value == PaymentType.SUBSCRIPTION_UPGRADE.value:
        return PaymentType.SUBSCRIPTION_UPGRADE
    return PaymentType.NEW_SUBSCRIPTION


def _result_from(transaction: Transaction, already_applied: bool = False) -> ConfirmationResult:
    return ConfirmationResult(
        subscription_id=transaction.subscription_id,
        transaction_id=transaction.id,
        plan_id=transaction.plan_id,
        amount=transaction.amount,
        currency=transaction.currency,
        already_applied=already_applied,
    )
