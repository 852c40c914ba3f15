"""FastAPI routers."""

from __future__ import annotations

from . import (  # noqa: F401
    admin_billing,
    billing_webhooks,
    health,
    practice_records,
    subscription,
    subscription_plans,
)

__all__ = [
    "admin_billing",
    "billing_webhooks",
    "health",
    "practice_records",
    "subscription",
    "subscription_plans",
]
