"""
Subscription repository.

Persistence for companies, subscriptions, transactions and the payment log.
Every method takes the caller's session so multi-row changes commit or roll
back together inside one get_db_session() block.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.orm import Session

from paybridge.core.database import (
    companies,
    company_subscriptions,
    payment_logs,
    transactions,
)
from paybridge.models.billing import (
    Company,
    CompanySubscription,
    PaymentLogEntry,
    PaymentLogEvent,
    PaymentType,
    Transaction,
    TransactionStatus,
    utc_now,
)


def new_id() -> str:
    return str(uuid4())


def _subscription(row) -> Optional[CompanySubscription]:
    if row is None:
        return None
    return CompanySubscription(
        id=row.id,
        company_id=row.company_id,
        plan_id=row.plan_id,
        start_date=row.start_date,
        end_date=row.end_date,
        is_expired=bool(row.is_expired),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        is_trial=bool(row.is_trial),
        external_subscription_id=row.external_subscription_id,
        external_item_id=row.external_item_id,
        last_event_at=row.last_event_at,
    )


def _transaction(row) -> Optional[Transaction]:
    if row is None:
        return None
    return Transaction(
        id=row.id,
        company_id=row.company_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        subscription_id=row.subscription_id,
        amount=row.amount,
        currency=row.currency,
        status=TransactionStatus(row.status),
        payment_type=PaymentType(row.payment_type),
        external_payment_intent_id=row.external_payment_intent_id,
        failure_code=row.failure_code,
        created_at=row.created_at,
    )


def _log_entry(row) -> PaymentLogEntry:
    return PaymentLogEntry(**dict(row._mapping))


class SubscriptionRepository:
    """Stateless data access for billing tables."""

    # Companies

    def get_company(self, session: Session, company_id: str) -> Optional[Company]:
        row = session.execute(select(companies).where(companies.c.id == company_id)).fetchone()
        if row is None:
            return None
        return Company(
            id=row.id,
            name=row.name,
            plan_id=row.plan_id,
            external_customer_id=row.external_customer_id,
        )

    def get_company_by_customer(self, session: Session, customer_id: str) -> Optional[Company]:
        row = session.execute(
            select(companies.c.id).where(companies.c.external_customer_id == customer_id)
        ).fetchone()
        return self.get_company(session, row.id) if row else None

    def set_customer_id_if_missing(self, session: Session, company_id: str, customer_id: str) -> str:
        """Set the processor customer id once; returns whichever id is stored."""
        session.execute(
            update(companies)
            .where(and_(companies.c.id == company_id, companies.c.external_customer_id.is_(None)))
            .values(external_customer_id=customer_id)
        )
        stored = session.execute(
            select(companies.c.external_customer_id).where(companies.c.id == company_id)
        ).scalar_one()
        return stored

    def set_company_plan(self, session: Session, company_id: str, plan_id: Optional[str]) -> None:
        session.execute(update(companies).where(companies.c.id == company_id).values(plan_id=plan_id))

    def count_companies(self, session: Session) -> int:
        return session.execute(select(func.count()).select_from(companies)).scalar_one()

    # Subscriptions

    def get_subscription(self, session: Session, subscription_id: str) -> Optional[CompanySubscription]:
        row = session.execute(
            select(company_subscriptions).where(company_subscriptions.c.id == subscription_id)
        ).fetchone()
        return _subscription(row)

    def get_subscription_by_external_id(self, session: Session, external_id: str) -> Optional[CompanySubscription]:
        row = session.execute(
            select(company_subscriptions).where(company_subscriptions.c.external_subscription_id == external_id)
        ).fetchone()
        return _subscription(row)

    def get_active_subscription(self, session: Session, company_id: str, now: datetime) -> Optional[CompanySubscription]:
        row = session.execute(
            select(company_subscriptions).where(
                and_(
                    company_subscriptions.c.company_id == company_id,
                    company_subscriptions.c.is_expired.is_(False),
                    company_subscriptions.c.end_date > now,
                )
            )
        ).fetchone()
        return _subscription(row)

    def get_latest_subscription(self, session: Session, company_id: str) -> Optional[CompanySubscription]:
        row = session.execute(
            select(company_subscriptions)
            .where(company_subscriptions.c.company_id == company_id)
            .order_by(company_subscriptions.c.start_date.desc())
            .limit(1)
        ).fetchone()
        return _subscription(row)

    def list_subscriptions(self, session: Session, company_id: str) -> List[CompanySubscription]:
        rows = session.execute(
            select(company_subscriptions)
            .where(company_subscriptions.c.company_id == company_id)
            .order_by(company_subscriptions.c.start_date)
        ).fetchall()
        return [_subscription(row) for row in rows]

    def insert_subscription(
        self,
        session: Session,
        *,
        company_id: str,
        plan_id: str,
        start_date: datetime,
        end_date: datetime,
        is_trial: bool = False,
        external_subscription_id: Optional[str] = None,
        external_item_id: Optional[str] = None,
    ) -> CompanySubscription:
        subscription_id = new_id()
        session.execute(
            insert(company_subscriptions).values(
                id=subscription_id,
                company_id=company_id,
                plan_id=plan_id,
                start_date=start_date,
                end_date=end_date,
                is_expired=False,
                cancel_at_period_end=False,
                is_trial=is_trial,
                external_subscription_id=external_subscription_id,
                external_item_id=external_item_id,
            )
        )
        return self.get_subscription(session, subscription_id)

    def update_subscription(self, session: Session, subscription_id: str, **values) -> CompanySubscription:
        values.setdefault("updated_at", utc_now())
        session.execute(
            update(company_subscriptions)
            .where(company_subscriptions.c.id == subscription_id)
            .values(**values)
        )
        return self.get_subscription(session, subscription_id)

    def expire_lapsed(self, session: Session, now: datetime, company_id: Optional[str] = None) -> List[CompanySubscription]:
        """Mark rows past their end date as expired; returns the rows changed."""
        conditions = [
            company_subscriptions.c.is_expired.is_(False),
            company_subscriptions.c.end_date <= now,
        ]
        if company_id is not None:
            conditions.append(company_subscriptions.c.company_id == company_id)
        rows = session.execute(select(company_subscriptions).where(and_(*conditions))).fetchall()
        if not rows:
            return []
        session.execute(
            update(company_subscriptions)
            .where(company_subscriptions.c.id.in_([row.id for row in rows]))
            .values(is_expired=True, updated_at=now)
        )
        return [self.get_subscription(session, row.id) for row in rows]

    def count_lapsed_unexpired(self, session: Session, now: datetime) -> int:
        return session.execute(
            select(func.count()).select_from(company_subscriptions).where(
                and_(
                    company_subscriptions.c.is_expired.is_(False),
                    company_subscriptions.c.end_date <= now,
                )
            )
        ).scalar_one()

    def subscription_counts(self, session: Session, now: datetime) -> Dict[str, int]:
        total = session.execute(select(func.count()).select_from(company_subscriptions)).scalar_one()
        active = session.execute(
            select(func.count()).select_from(company_subscriptions).where(
                and_(
                    company_subscriptions.c.is_expired.is_(False),
                    company_subscriptions.c.end_date > now,
                )
            )
        ).scalar_one()
        return {"total": total, "active": active, "expired": total - active}

    # Transactions

    def insert_transaction(
        self,
        session: Session,
        *,
        company_id: str,
        amount: int,
        currency: str,
        status: TransactionStatus,
        payment_type: PaymentType,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        external_payment_intent_id: Optional[str] = None,
        failure_code: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        transaction_id = transaction_id or new_id()
        session.execute(
            insert(transactions).values(
                id=transaction_id,
                company_id=company_id,
                user_id=user_id,
                plan_id=plan_id,
                subscription_id=subscription_id,
                amount=amount,
                currency=currency,
                status=status.value,
                payment_type=payment_type.value,
                external_payment_intent_id=external_payment_intent_id,
                failure_code=failure_code,
            )
        )
        return self.get_transaction(session, transaction_id)

    def get_transaction(self, session: Session, transaction_id: str) -> Optional[Transaction]:
        row = session.execute(select(transactions).where(transactions.c.id == transaction_id)).fetchone()
        return _transaction(row)

    def get_transaction_by_intent(
        self,
        session: Session,
        payment_intent_id: str,
        status: Optional[TransactionStatus] = None,
    ) -> Optional[Transaction]:
        query = select(transactions).where(transactions.c.external_payment_intent_id == payment_intent_id)
        if status is not None:
            query = query.where(transactions.c.status == status.value)
        row = session.execute(query.order_by(transactions.c.created_at.desc()).limit(1)).fetchone()
        return _transaction(row)

    def transition_transaction(
        self,
        session: Session,
        payment_intent_id: str,
        to_status: TransactionStatus,
        *,
        subscription_id: Optional[str] = None,
        failure_code: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Move the PENDING transaction for an intent to a terminal status.

        Compare-and-set: returns None when no PENDING row was updated.
        """
        pending = self.get_transaction_by_intent(session, payment_intent_id, TransactionStatus.PENDING)
        if pending is None:
            return None
        values = {"status": to_status.value, "updated_at": utc_now()}
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        if failure_code is not None:
            values["failure_code"] = failure_code
        result = session.execute(
            update(transactions)
            .where(
                and_(
                    transactions.c.id == pending.id,
                    transactions.c.status == TransactionStatus.PENDING.value,
                )
            )
            .values(**values)
        )
        if result.rowcount != 1:
            return None
        return self.get_transaction(session, pending.id)

    def attach_subscription(self, session: Session, transaction_id: str, subscription_id: str) -> None:
        session.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id)
            .values(subscription_id=subscription_id)
        )

    def has_pending_transaction(self, session: Session, company_id: str, payment_type: PaymentType) -> bool:
        row = session.execute(
            select(transactions.c.id).where(
                and_(
                    transactions.c.company_id == company_id,
                    transactions.c.status == TransactionStatus.PENDING.value,
                    transactions.c.payment_type == payment_type.value,
                )
            ).limit(1)
        ).fetchone()
        return row is not None

    def count_transactions(self, session: Session, company_id: Optional[str] = None) -> Dict[str, int]:
        query = select(transactions.c.status, func.count()).group_by(transactions.c.status)
        if company_id is not None:
            query = query.where(transactions.c.company_id == company_id)
        counts = {status.value: 0 for status in TransactionStatus}
        for status, count in session.execute(query).fetchall():
            counts[status] = count
        return counts

    # Payment log

    def append_log(
        self,
        session: Session,
        event: PaymentLogEvent,
        *,
        now: Optional[datetime] = None,
        **fields,
    ) -> int:
        result = session.execute(
            insert(payment_logs).values(
                event=event.value,
                timestamp=now or utc_now(),
                **fields,
            )
        )
        return result.inserted_primary_key[0]

    def has_event(self, session: Session, external_event_id: str) -> bool:
        row = session.execute(
            select(payment_logs.c.id).where(payment_logs.c.external_event_id == external_event_id)
        ).fetchone()
        return row is not None

    def list_logs(
        self,
        session: Session,
        *,
        company_id: Optional[str] = None,
        event: Optional[PaymentLogEvent] = None,
        external_event_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[PaymentLogEntry]:
        query = select(payment_logs)
        if company_id is not None:
            query = query.where(payment_logs.c.company_id == company_id)
        if event is not None:
            query = query.where(payment_logs.c.event == event.value)
        if external_event_id is not None:
            query = query.where(payment_logs.c.external_event_id == external_event_id)
        rows = session.execute(query.order_by(payment_logs.c.id).limit(limit)).fetchall()
        return [_log_entry(row) for row in rows]

    def recent_errors(self, session: Session, limit: int = 5) -> List[PaymentLogEntry]:
        rows = session.execute(
            select(payment_logs)
            .where(or_(payment_logs.c.status == "FAILED", payment_logs.c.error_code.is_not(None)))
            .order_by(payment_logs.c.timestamp.desc(), payment_logs.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [_log_entry(row) for row in rows]

    def count_logs_since(self, session: Session, event: PaymentLogEvent, since: datetime) -> int:
        return session.execute(
            select(func.count()).select_from(payment_logs).where(
                and_(payment_logs.c.event == event.value, payment_logs.c.timestamp >= since)
            )
        ).scalar_one()

    def last_log_at(self, session: Session, event: PaymentLogEvent) -> Optional[datetime]:
        return session.execute(
            select(func.max(payment_logs.c.timestamp)).where(payment_logs.c.event == event.value)
        ).scalar_one()
