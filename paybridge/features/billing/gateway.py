"""
Payment gateway protocol.

Defines the interface the billing core needs from a payment processor.
Business logic depends on this protocol only, so the processor can be
swapped (or faked in tests) without touching orchestration code.
"""
import json
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class GatewayIntent:
    """A payment intent as seen by the billing core."""
    id: str
    status: str  # requires_payment_method, processing, succeeded, canceled, ...
    amount: int
    currency: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def failed(self) -> bool:
        if self.status == "canceled":
            return True
        return self.status == "requires_payment_method" and bool(
            self.last_error_code or self.last_error_message
        )


@dataclass
class GatewaySubscription:
    id: str
    status: str
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass
class GatewayEvent:
    """A verified processor notification."""
    id: str
    type: str
    created: Optional[datetime]
    data: Dict[str, Any]


class PaymentGateway(Protocol):
    """
    Protocol for payment processors.

    Implementations must handle:
    - Customer creation
    - Payment intents (create, retrieve)
    - Subscription item price changes, trials and cancellation
    - Plan price management
    - Webhook signature verification and parsing
    """

    def create_customer(self, company_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Create a processor customer for the company.

        Returns:
            Processor customer ID

        Raises:
            GatewayError: If customer creation fails
        """
        ...

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
    ) -> GatewayIntent:
        """Create a payment intent for `amount` minor units."""
        ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> Optional[GatewayIntent]:
        """Fetch an intent. Returns None when the processor does not know it."""
        ...

    def update_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        proration_behavior: str = "none",
    ) -> GatewaySubscription:
        ...

    def create_trial_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
        metadata: Dict[str, str],
    ) -> GatewaySubscription:
        ...

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> GatewaySubscription:
        ...

    def create_price(self, product_id: str, amount: int, currency: str) -> str:
        """Create a new recurring price on a product and make it the default."""
        ...

    def deactivate_price(self, price_id: str) -> None:
        ...

    def construct_event(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        """
        Verify webhook signature and parse the event.

        Raises:
            GatewayWebhookError: If signature invalid or parsing fails
        """
        ...

    def ping(self) -> None:
        """Cheap authenticated call used by health checks."""
        ...


class GatewayError(Exception):
    """Base exception for payment processor errors."""

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class GatewayWebhookError(GatewayError):
    """Exception for webhook verification errors."""
    pass


def timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def intent_from_payload(data: Dict[str, Any]) -> GatewayIntent:
    """Build a GatewayIntent from a processor payment_intent object."""
    last_error = data.get("last_payment_error") or {}
    return GatewayIntent(
        id=data["id"],
        status=data.get("status") or "",
        amount=int(data.get("amount") or 0),
        currency=data.get("currency") or "usd",
        client_secret=data.get("client_secret"),
        metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
        last_error_code=last_error.get("decline_code") or last_error.get("code"),
        last_error_message=last_error.get("message"),
    )


def subscription_period_end(data: Dict[str, Any]) -> Optional[datetime]:
    """Period end from a subscription object.

    Newer API versions report the period on the subscription item.
    """
    period_end = data.get("current_period_end")
    if period_end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return timestamp_to_datetime(period_end)


def subscription_from_payload(data: Dict[str, Any]) -> GatewaySubscription:
    items = (data.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    return GatewaySubscription(
        id=data["id"],
        status=data.get("status") or "",
        item_id=first.get("id"),
        price_id=(first.get("price") or {}).get("id"),
        current_period_end=subscription_period_end(data),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
    )


def event_from_payload(body: bytes) -> GatewayEvent:
    """Parse a verified notification body.

    Raises:
        GatewayWebhookError: If the body is not a JSON event with an id and type
    """
    try:
        event = json.loads(body)
    except ValueError as e:
        raise GatewayWebhookError(f"Invalid payload: {e}")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise GatewayWebhookError("Event payload is missing id or type")

    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if obj is not None and not isinstance(obj, dict):
        raise GatewayWebhookError("Event data.object is not an object")
    try:
        created = timestamp_to_datetime(event.get("created"))
    except (TypeError, ValueError, OverflowError) as e:
        raise GatewayWebhookError(f"Invalid event timestamp: {e}")
    return GatewayEvent(id=str(event["id"]), type=str(event["type"]), created=created, data=obj or {})
