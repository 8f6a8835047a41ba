"""
Stripe payment gateway.

Implements the PaymentGateway protocol on the Stripe API and normalizes
Stripe errors into GatewayError.
"""
import os
from typing import Dict, Any, Optional

import stripe

from paybridge.features.billing.gateway import (
    GatewayError,
    GatewayEvent,
    GatewayIntent,
    GatewaySubscription,
    GatewayWebhookError,
    event_from_payload,
    intent_from_payload,
    subscription_from_payload,
)


def _as_dict(obj) -> Dict[str, Any]:
    return obj.to_dict()


class StripeGateway:
    """Stripe implementation of PaymentGateway protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None, api_version: Optional[str] = None):
        """
        Initialize Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            api_version: Optional pinned API version
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        if api_version:
            stripe.api_version = api_version

    def create_customer(self, company_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        customer_data: Dict[str, Any] = {"metadata": {"company_id": company_id}}
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(
                idempotency_key=f"customer-{company_id}",
                **customer_data,
            )
            return customer.id
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe customer creation failed: {e}", code=getattr(e, "code", None))

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
    ) -> GatewayIntent:
        options: Dict[str, Any] = {}
        if metadata.get("transaction_id"):
            options["idempotency_key"] = f"intent-{metadata['transaction_id']}"
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **options,
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe payment intent creation failed: {e}", code=getattr(e, "code", None))
        return intent_from_payload(_as_dict(intent))

    def retrieve_payment_intent(self, payment_intent_id: str) -> Optional[GatewayIntent]:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise GatewayError(f"Stripe payment intent lookup failed: {e}", code=getattr(e, "code", None))
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe payment intent lookup failed: {e}", code=getattr(e, "code", None))
        return intent_from_payload(_as_dict(intent))

    def update_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        proration_behavior: str = "none",
    ) -> GatewaySubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior=proration_behavior,
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription update failed: {e}", code=getattr(e, "code", None))
        return subscription_from_payload(_as_dict(subscription))

    def create_trial_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
        metadata: Dict[str, str],
    ) -> GatewaySubscription:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                trial_period_days=trial_days,
                trial_settings={"end_behavior": {"missing_payment_method": "cancel"}},
                payment_settings={"save_default_payment_method": "on_subscription"},
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe trial creation failed: {e}", code=getattr(e, "code", None))
        return subscription_from_payload(_as_dict(subscription))

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription cancel failed: {e}", code=getattr(e, "code", None))
        return subscription_from_payload(_as_dict(subscription))

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> GatewaySubscription:
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription update failed: {e}", code=getattr(e, "code", None))
        return subscription_from_payload(_as_dict(subscription))

    def create_price(self, product_id: str, amount: int, currency: str) -> str:
        try:
            price = stripe.Price.create(
                product=product_id,
                currency=currency,
                unit_amount=amount,
                recurring={"interval": "month"},
            )
            stripe.Product.modify(product_id, default_price=price.id)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe price creation failed: {e}", code=getattr(e, "code", None))
        return price.id

    def deactivate_price(self, price_id: str) -> None:
        try:
            stripe.Price.modify(price_id, active=False)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe price update failed: {e}", code=getattr(e, "code", None))

    def construct_event(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise GatewayWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise GatewayWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise GatewayWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise GatewayWebhookError(f"Invalid signature: {e}")

        return event_from_payload(body)

    def ping(self) -> None:
        try:
            stripe.Balance.retrieve()
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe unreachable: {e}", code=getattr(e, "code", None))
