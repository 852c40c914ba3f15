"""Translate billing errors into HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from services.billing.errors import BillingError, LimitExceeded, SubscriptionInactive


def to_http_exception(exc: BillingError) -> HTTPException:
    headers = None
    if isinstance(exc, LimitExceeded):
        headers = {"X-Limit-Resource": exc.resource, "X-Limit-Value": str(exc.limit)}
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail(), headers=headers)


def wants_html(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    if "application/json" in accept:
        return False
    return "text/html" in accept


async def subscription_inactive_handler(request: Request, exc: SubscriptionInactive):
    if wants_html(request):
        return RedirectResponse(url=exc.redirect_to, status_code=status.HTTP_303_SEE_OTHER)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": exc.to_detail()})


async def billing_error_handler(request: Request, exc: BillingError):
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail}, headers=http_exc.headers)


def install_billing_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SubscriptionInactive, subscription_inactive_handler)
    app.add_exception_handler(BillingError, billing_error_handler)


__all__ = ["install_billing_exception_handlers", "to_http_exception", "wants_html"]
