"""Seed the default subscription plan catalogue (Basic, Professional, Enterprise)."""

from __future__ import annotations

import argparse
from typing import Any, Dict, List

from scripts._path import add_root

add_root()

from sqlalchemy import delete, select

from core.logging import get_logger
from database import session_scope
from models.billing import Subscription, SubscriptionPlan
from services.billing import plan_catalog

logger = get_logger(__name__)

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": "Basic",
        "description": "Perfect for small practices just getting started",
        "monthly_price": "29.99",
        "yearly_price": "299.99",
        "max_patients": 100,
        "max_users": 2,
        "email_notifications": True,
        "is_default": False,
        "sort_order": 1,
        "gateway_price_id_monthly": "price_basic_monthly",
        "gateway_price_id_yearly": "price_basic_yearly",
    },
    {
        "name": "Professional",
        "description": "Most popular choice for growing practices",
        "monthly_price": "59.99",
        "yearly_price": "599.99",
        "max_patients": 500,
        "max_users": 5,
        "custom_branding": True,
        "priority_support": True,
        "advanced_reports": True,
        "api_access": True,
        "sms_notifications": True,
        "email_notifications": True,
        "is_default": True,
        "sort_order": 2,
        "gateway_price_id_monthly": "price_professional_monthly",
        "gateway_price_id_yearly": "price_professional_yearly",
    },
    {
        "name": "Enterprise",
        "description": "Advanced features for large healthcare organizations",
        "monthly_price": "99.99",
        "yearly_price": "999.99",
        "max_patients": -1,
        "max_users": -1,
        "custom_branding": True,
        "priority_support": True,
        "advanced_reports": True,
        "api_access": True,
        "sms_notifications": True,
        "email_notifications": True,
        "data_backup": True,
        "is_default": False,
        "sort_order": 3,
        "gateway_price_id_monthly": "price_enterprise_monthly",
        "gateway_price_id_yearly": "price_enterprise_yearly",
    },
]


def seed_subscription_plans(*, replace: bool = False) -> int:
    """Insert missing default plans; ``replace`` drops unreferenced plans first."""

    created = 0
    with session_scope() as session:
        if replace:
            referenced = select(Subscription.plan_id).where(Subscription.plan_id.is_not(None))
            removed = session.execute(delete(SubscriptionPlan).where(SubscriptionPlan.id.not_in(referenced))).rowcount
            logger.info("Removed %d unreferenced subscription plan(s).", removed or 0)
        existing = set(session.scalars(select(SubscriptionPlan.name)))
        for fields in DEFAULT_PLANS:
            if fields["name"] in existing:
                logger.info("Plan %s already present; skipping.", fields["name"])
                continue
            plan = plan_catalog.create_plan(session, fields)
            logger.info("- %s: %s/month, %s/year", plan.name, plan.monthly_price, plan.yearly_price)
            created += 1
    logger.info("Seeded %d subscription plan(s).", created)
    return created


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--replace", action="store_true", help="drop plans no subscription references before seeding")
    args = parser.parse_args()
    seed_subscription_plans(replace=args.replace)


if __name__ == "__main__":
    main()
