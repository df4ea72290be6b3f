"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from billing_reconciler.api.middleware import RequestIDMiddleware, MetricsMiddleware
from billing_reconciler.api.v1 import accounts, billing_records, invoices, payments
from billing_reconciler.infrastructure.observability.logging import setup_logging
from billing_reconciler.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Billing Reconciler",
        description="Keeps account balances, lateness and billing dates consistent with billing records",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(billing_records.router, prefix="/v1", tags=["billing-records"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(accounts.router, prefix="/v1", tags=["accounts"])
    app.include_router(invoices.router, prefix="/v1", tags=["invoices"])

    return app


app = create_app()
