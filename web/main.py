"""FastAPI application for the subscription and usage metering service."""

from __future__ import annotations

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import load_dotenv_if_available
from core.logging import get_logger
from web import routers
from web.billing_errors import install_billing_exception_handlers

load_dotenv_if_available()
logger = get_logger(__name__)

app = FastAPI(
    title="Practice Billing API",
    description="Subscription lifecycle, entitlements and usage metering.",
    version="1.0.0",
)
install_billing_exception_handlers(app)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "Practice billing API is running."}


@app.get("/healthz", include_in_schema=False)
def liveness():
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.health.router, prefix="/api/v1")
app.include_router(routers.billing_webhooks.router, prefix="/api/v1")
app.include_router(routers.subscription.router, prefix="/api/v1")
app.include_router(routers.subscription_plans.router, prefix="/api/v1")
app.include_router(routers.practice_records.router, prefix="/api/v1")
app.include_router(routers.admin_billing.router, prefix="/api/v1")
