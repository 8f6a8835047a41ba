import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# .env must be loaded before settings are read; tests configure the env themselves
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from paybridge.api import health, payments, plans, subscriptions  # noqa: E402
from paybridge.core.config import settings, validate_config  # noqa: E402
from paybridge.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from paybridge.core.logging import LOGGER_NAME, configure_logging  # noqa: E402
from paybridge.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from paybridge.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from paybridge.features.billing.service import billing_enabled  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)

logger = logging.getLogger(LOGGER_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.startup_time = time.time()
    logger.info(f"paybridge starting (env={settings.ENV}, billing_enabled={billing_enabled()})")
    try:
        yield
    finally:
        logger.info("paybridge stopping")


app = FastAPI(title="paybridge - Billing", lifespan=lifespan)

# Outermost last: CORS, then request id, then metrics
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["x-request-id"],
)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

for module in (payments, subscriptions, plans, health):
    app.include_router(module.router)
