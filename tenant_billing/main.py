"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from tenant_billing.core.config import settings
from tenant_billing.core.database import engine
from tenant_billing.core.errors import register_exception_handlers
from tenant_billing.core.logging import setup_logging
from tenant_billing.core.metrics import get_content_type, get_metrics, set_app_info
from tenant_billing.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from tenant_billing.core.tracing import setup_tracing, shutdown_tracing
from tenant_billing.modules.billing import router as billing_router
from tenant_billing.modules.billing.notifications import BillingNotificationService
from tenant_billing.modules.payment_gateway import payment_router, webhook_router
from tenant_billing.modules.payment_gateway.service import GatewayRegistry

ENVIRONMENT = "development" if settings.DEBUG else "production"

setup_logging(
    level="INFO" if not settings.DEBUG else "DEBUG",
    json_format=True,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=ENVIRONMENT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=ENVIRONMENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.gateway_registry = GatewayRegistry.from_settings()
    app.state.notifier = BillingNotificationService()
    yield
    await engine.dispose()
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Tenant Billing Engine

Subscription lifecycle, tier entitlements, proration and payment-gateway
reconciliation for a multi-tenant platform.

### Fitur Utama

* **Plans** - Tier catalog with monthly and yearly pricing
* **Subscriptions** - Trial, activation, upgrades, downgrades, cancellation
* **Usage** - Per-tenant counters checked against tier limits
* **Invoices** - Renewal, proration and manual invoices
* **Payments** - Midtrans Snap and Tripay closed payments with webhook reconciliation
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "billing", "description": "Plans, subscriptions, usage and invoices"},
        {"name": "payments", "description": "Gateway charges and payment transactions"},
        {"name": "webhooks", "description": "Midtrans and Tripay payment notifications"},
    ],
)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" or "unhealthy" value.
    """
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
app.include_router(payment_router, prefix=settings.API_V1_PREFIX)
app.include_router(webhook_router, prefix=settings.API_V1_PREFIX)
