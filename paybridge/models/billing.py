"""
Billing models for paybridge.

Plans, company subscriptions, transactions and the payment log, plus the
result shapes returned by the payment and lifecycle services.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


UNLIMITED = -1

LIMIT_RESOURCES = ("workspaces", "sheets", "members", "viewers", "tasks")


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PaymentType(str, Enum):
    NEW_SUBSCRIPTION = "new_subscription"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    IMMEDIATE_UPGRADE = "immediate_upgrade"
    FREE_PLAN = "free_plan"
    INVOICE = "invoice"


class SubscriptionState(str, Enum):
    NONE = "NONE"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    CANCELLING = "CANCELLING"
    EXPIRED = "EXPIRED"


class RoleType(str, Enum):
    AUTHOR = "AUTHOR"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class PaymentLogEvent(str, Enum):
    PAYMENT_INTENT_CREATED = "PAYMENT_INTENT_CREATED"
    SUBSCRIPTION_UPGRADE_INTENT_CREATED = "SUBSCRIPTION_UPGRADE_INTENT_CREATED"
    SUBSCRIPTION_UPGRADED_IMMEDIATE = "SUBSCRIPTION_UPGRADED_IMMEDIATE"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    PAYMENT_CONFLICT = "PAYMENT_CONFLICT"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_TRIAL_CREATED = "SUBSCRIPTION_TRIAL_CREATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_CANCEL_SCHEDULED = "SUBSCRIPTION_CANCEL_SCHEDULED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    WEBHOOK_PROCESSED = "WEBHOOK_PROCESSED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"


class Plan(BaseModel):
    """
    A purchasable tier with a price in minor currency units.

    Limits use -1 for unlimited.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    price: int
    currency: str = "usd"
    max_workspaces: int = UNLIMITED
    max_sheets: int = UNLIMITED
    max_members: int = UNLIMITED
    max_viewers: int = UNLIMITED
    max_tasks: int = UNLIMITED
    sort_order: int = 0
    external_product_id: Optional[str] = None
    external_price_id: Optional[str] = None
    is_active: bool = True

    def limit_for(self, resource: str) -> int:
        return getattr(self, f"max_{resource}")

    @property
    def limits(self) -> Dict[str, int]:
        return {resource: self.limit_for(resource) for resource in LIMIT_RESOURCES}


class Company(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    plan_id: Optional[str] = None
    external_customer_id: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.user_id


class Role(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: RoleType
    company_id: str
    access: str = "FULL"


class CompanySubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    company_id: str
    plan_id: str
    start_date: datetime
    end_date: datetime
    is_expired: bool = False
    cancel_at_period_end: bool = False
    is_trial: bool = False
    external_subscription_id: Optional[str] = None
    external_item_id: Optional[str] = None
    last_event_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return not self.is_expired and self.end_date > now


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    company_id: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: int
    currency: str
    status: TransactionStatus
    payment_type: PaymentType
    external_payment_intent_id: Optional[str] = None
    failure_code: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event: str
    company_id: Optional[str] = None
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    external_event_id: Optional[str] = None
    external_event_type: Optional[str] = None
    event_created_at: Optional[datetime] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime


class PaymentResult(BaseModel):
    """Outcome of create_payment: a client secret, or an applied change."""
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    is_upgrade: bool = False
    proration_amount: Optional[int] = None
    subscription_id: Optional[str] = None
    requires_payment: bool = True


class ConfirmationResult(BaseModel):
    subscription_id: str
    transaction_id: str
    plan_id: str
    amount: int
    currency: str
    already_applied: bool = False


class ResourceUsage(BaseModel):
    used: int
    limit: Optional[int] = None  # None means unlimited
    remaining: Optional[int] = None
    unlimited: bool = False


class UsageReport(BaseModel):
    company_id: str
    plan_id: str
    plan_name: str
    end_date: datetime
    usage: Dict[str, ResourceUsage] = Field(default_factory=dict)


class WebhookOutcome(BaseModel):
    event_id: str
    event_type: str
    status: str  # processed | duplicate | stale | ignored | conflict
