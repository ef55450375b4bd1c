"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from academy_billing.core.alerting import setup_default_alerts
from academy_billing.core.config import settings
from academy_billing.core.exceptions import BillingEngineError
from academy_billing.core.logging import setup_logging
from academy_billing.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from academy_billing.core.middleware import CorrelationIdMiddleware, MetricsMiddleware
from academy_billing.core.store import build_store
from academy_billing.modules.billing.router import admin_router as billing_admin_router
from academy_billing.modules.billing.router import router as subscription_router
from academy_billing.modules.payment_gateway.router import (
    admin_router as webhook_events_admin_router,
    webhook_router,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Academy Billing API

Subscription plans, add-ons, usage limits, refunds and PortOne payment webhooks
for the academy management platform.

### Authentication

All endpoints except `/health`, `/metrics` and the webhook receivers require a
JWT Bearer token. Webhooks are authenticated by their HMAC signature.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "subscription",
            "description": "Plan status, upgrades, downgrades, add-ons and limit checks",
        },
        {
            "name": "billing-admin",
            "description": "Refunds and academy usage for platform administrators",
        },
        {
            "name": "Webhooks",
            "description": "PortOne settlement and payout webhook receivers",
        },
        {
            "name": "Webhook Events Admin",
            "description": "Webhook event log review",
        },
    ],
)


# Set up logging with correlation IDs
setup_logging(
    level="INFO" if not settings.DEBUG else "DEBUG",
    json_format=True,
    include_stack_trace=True,
)

setup_default_alerts()

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

# Shared store behind tenant locks; must be redis when running several workers
app.state.kv_store = build_store()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(BillingEngineError)
async def billing_engine_exception_handler(
    request: Request, exc: BillingEngineError
) -> JSONResponse:
    """Render engine errors with their own status code and error body."""
    if exc.status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc.message}",
            extra={"code": exc.code, "retryable": exc.retryable},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# Include routers
app.include_router(subscription_router, prefix=settings.API_V1_PREFIX)
app.include_router(billing_admin_router, prefix=settings.API_V1_PREFIX)
app.include_router(webhook_router, prefix=settings.API_V1_PREFIX)
app.include_router(webhook_events_admin_router, prefix=settings.API_V1_PREFIX)
