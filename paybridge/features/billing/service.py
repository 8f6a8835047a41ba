"""
Billing service wiring.

Builds the gateway and the services on top of it. Billing is enabled only
when STRIPE_SECRET_KEY is set; otherwise payment endpoints answer 503 and
the health monitor runs without a processor.
"""
import os
from typing import Optional

from paybridge.core.config import settings
from paybridge.core.errors import BillingDisabledError
from paybridge.features.billing.gateway import GatewayError, PaymentGateway
from paybridge.features.billing.orchestrator import PaymentOrchestrator
from paybridge.features.billing.stripe_gateway import StripeGateway
from paybridge.features.billing.webhooks import WebhookReconciler
from paybridge.features.health.monitor import HealthMonitor
from paybridge.features.plans.catalog import PlanCatalog
from paybridge.features.subscriptions.lifecycle import SubscriptionLifecycleManager


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_gateway() -> PaymentGateway:
    """
    Stripe gateway for the current configuration.

    Raises:
        BillingDisabledError: STRIPE_SECRET_KEY is not set
    """
    if not billing_enabled():
        raise BillingDisabledError()
    try:
        return StripeGateway(
            secret_key=os.getenv("STRIPE_SECRET_KEY"),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET,
            api_version=settings.STRIPE_API_VERSION,
        )
    except GatewayError as exc:
        raise BillingDisabledError(str(exc)) from exc


def get_optional_gateway() -> Optional[PaymentGateway]:
    if not billing_enabled():
        return None
    return get_gateway()


def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog(get_optional_gateway())


def get_payment_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator(get_gateway())


def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(get_payment_orchestrator())


def get_lifecycle_manager() -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(get_payment_orchestrator())


def get_health_monitor() -> HealthMonitor:
    return HealthMonitor(gateway=get_optional_gateway())
