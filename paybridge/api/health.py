"""
Liveness and readiness checks plus the Prometheus scrape endpoint.

Billing health (processor reachability, webhook failures, lapsed rows) is
served by the payments router under /api/v1/payment/health.
"""
import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from paybridge.core.database import check_connection, get_engine, metadata
from paybridge.core.logging import LOGGER_NAME
from paybridge.core.metrics import METRICS

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(tags=["ops"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


def _not_ready(detail: str) -> JSONResponse:
    logger.warning(f"[readyz] {detail}")
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready once the database answers and every billing table exists."""
    if not check_connection():
        return _not_ready("database unreachable")
    try:
        existing = set(inspect(get_engine()).get_table_names())
    except SQLAlchemyError as e:
        logger.error(f"[readyz] schema inspection failed: {e}")
        return _not_ready("schema inspection failed")

    missing = sorted(set(metadata.tables) - existing)
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
