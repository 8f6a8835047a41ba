"""
Payment API routes.

- POST /api/v1/payment/inline: Start a purchase or upgrade
- POST /api/v1/payment/inline/confirm: Settle a completed payment
- POST /api/v1/payment/webhook: Handle Stripe webhooks
- GET  /api/v1/payment/health: Billing health checks
- GET  /api/v1/payment/status: Health, metrics and recent errors
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from paybridge.core.auth import get_current_user_id
from paybridge.features.billing.orchestrator import PaymentOrchestrator
from paybridge.features.billing.service import (
    get_health_monitor,
    get_payment_orchestrator,
    get_webhook_reconciler,
)
from paybridge.features.billing.webhooks import WebhookReconciler
from paybridge.features.health.monitor import UNHEALTHY, HealthMonitor


router = APIRouter(prefix="/api/v1/payment", tags=["payment"])


class CreatePaymentRequest(BaseModel):
    plan_id: str


class CreatePaymentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int
    currency: str
    is_upgrade: bool = False
    proration_amount: Optional[int] = None
    subscription_id: Optional[str] = None
    requires_payment: bool = True


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str


class ConfirmPaymentResponse(BaseModel):
    status: str
    subscription_id: str
    transaction_id: str
    plan_id: str
    amount: int
    currency: str
    already_applied: bool = False


@router.post("/inline", response_model=CreatePaymentResponse)
def create_inline_payment(
    request: CreatePaymentRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Start a payment for `plan_id`.

    Returns a client secret to complete on the client, or
    `requires_payment: false` when the change was applied directly
    (free plan, or an upgrade with nothing to collect).
    """
    result = orchestrator.create_payment(user_id, request.plan_id)
    return result.model_dump()


@router.post("/inline/confirm", response_model=ConfirmPaymentResponse)
def confirm_inline_payment(
    request: ConfirmPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    result = orchestrator.confirm_payment(request.payment_intent_id, user_id=user_id)
    return {"status": "SUCCESS", **result.model_dump()}


@router.post("/webhook")
async def handle_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_webhook_reconciler)):
    """
    Handle Stripe webhook events.

    Answers 200 only once the event and its log entry are committed.

    Errors:
        400: Invalid signature
        500: Processing failed (Stripe retries)
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    outcome = reconciler.handle(headers, body)
    return {"received": True, "event_id": outcome.event_id, "status": outcome.status}


@router.get("/health")
def payment_health(monitor: HealthMonitor = Depends(get_health_monitor)):
    report = monitor.check_health()
    if report["status"] == UNHEALTHY:
        return JSONResponse(status_code=503, content=report)
    return report


@router.get("/status")
def payment_status(monitor: HealthMonitor = Depends(get_health_monitor)):
    return monitor.get_status()
