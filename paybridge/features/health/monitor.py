"""
Billing health monitor.

Checks the processor, the database, webhook delivery and subscription
hygiene, and summarizes payment metrics for operators.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from paybridge.core.config import settings
from paybridge.core.database import check_connection, get_db_session
from paybridge.core.logging import log_event
from paybridge.core.metrics import health_status
from paybridge.features.billing.gateway import GatewayError, PaymentGateway
from paybridge.features.billing.repository import SubscriptionRepository
from paybridge.models.billing import PaymentLogEvent, TransactionStatus, utc_now

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_STATUS_VALUE = {HEALTHY: 1.0, DEGRADED: 0.5, UNHEALTHY: 0.0}


def overall_status(checks: Dict[str, Dict[str, Any]]) -> str:
    statuses = [check["status"] for check in checks.values()]
    if all(status == HEALTHY for status in statuses):
        return HEALTHY
    if any(status == UNHEALTHY for status in statuses):
        return UNHEALTHY
    return DEGRADED


class HealthMonitor:
    def __init__(self, gateway: Optional[PaymentGateway] = None, repository: Optional[SubscriptionRepository] = None):
        self.gateway = gateway
        self.repository = repository or SubscriptionRepository()

    def check_gateway(self) -> Dict[str, Any]:
        if self.gateway is None:
            return {"status": DEGRADED, "message": "Payment processor not configured"}
        try:
            self.gateway.ping()
        except GatewayError as exc:
            log_event("error", "health.gateway_failed", error_code=exc.code, extra={"error": exc})
            return {"status": UNHEALTHY, "message": "Payment processor unreachable"}
        return {"status": HEALTHY, "message": "Payment processor reachable"}

    def check_database(self) -> Dict[str, Any]:
        if check_connection():
            return {"status": HEALTHY, "message": "Database reachable"}
        return {"status": UNHEALTHY, "message": "Database unreachable"}

    def check_webhooks(self, now: datetime) -> Dict[str, Any]:
        since = now - timedelta(hours=settings.WEBHOOK_FAILURE_WINDOW_HOURS)
        with get_db_session() as session:
            failures = self.repository.count_logs_since(session, PaymentLogEvent.WEBHOOK_FAILED, since)
            last_processed = self.repository.last_log_at(session, PaymentLogEvent.WEBHOOK_PROCESSED)
        check = {
            "status": DEGRADED if failures else HEALTHY,
            "recent_failures": failures,
            "last_processed_at": last_processed.isoformat() if last_processed else None,
        }
        if failures:
            check["message"] = f"{failures} webhook failures in the last {settings.WEBHOOK_FAILURE_WINDOW_HOURS}h"
        return check

    def check_subscriptions(self, now: datetime) -> Dict[str, Any]:
        with get_db_session() as session:
            lapsed = self.repository.count_lapsed_unexpired(session, now)
        if lapsed:
            return {
                "status": DEGRADED,
                "lapsed_unexpired": lapsed,
                "message": f"{lapsed} subscriptions past end date are not marked expired",
            }
        return {"status": HEALTHY, "lapsed_unexpired": 0}

    def check_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        checks = {
            "gateway": self.check_gateway(),
            "database": self.check_database(),
        }
        if checks["database"]["status"] == HEALTHY:
            checks["webhooks"] = self.check_webhooks(now)
            checks["subscriptions"] = self.check_subscriptions(now)
        else:
            checks["webhooks"] = {"status": UNHEALTHY, "message": "Database unreachable"}
            checks["subscriptions"] = {"status": UNHEALTHY, "message": "Database unreachable"}

        for name, check in checks.items():
            health_status.set(_STATUS_VALUE[check["status"]], labels={"check": name})

        return {
            "status": overall_status(checks),
            "checks": checks,
            "timestamp": now.isoformat(),
        }

    def get_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        with get_db_session() as session:
            counts = self.repository.count_transactions(session)
            subscriptions = self.repository.subscription_counts(session, now)
            company_total = self.repository.count_companies(session)

        total = sum(counts.values())
        successful = counts[TransactionStatus.SUCCEEDED.value]
        failed = counts[TransactionStatus.FAILED.value]
        success_rate = round(successful / total * 100, 2) if total else 0.0
        return {
            "transactions": {
                "total": total,
                "successful": successful,
                "failed": failed,
                "pending": counts[TransactionStatus.PENDING.value],
                "success_rate": success_rate,
            },
            "subscriptions": subscriptions,
            "companies": {"total": company_total},
            "timestamp": now.isoformat(),
        }

    def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        health = self.check_health(now)
        metrics = self.get_metrics(now) if health["checks"]["database"]["status"] == HEALTHY else None
        recent_errors = []
        if metrics is not None:
            with get_db_session() as session:
                for entry in self.repository.recent_errors(session, settings.RECENT_ERRORS_LIMIT):
                    recent_errors.append({
                        "event": entry.event,
                        "error_code": entry.error_code,
                        "error_message": entry.error_message,
                        "company_id": entry.company_id,
                        "timestamp": entry.timestamp.isoformat(),
                    })
        return {
            "health": health,
            "metrics": metrics,
            "recent_errors": recent_errors,
            "timestamp": now.isoformat(),
        }
