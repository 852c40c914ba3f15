"""Periodic counterpart of the lazy expiry path, plus the subscription health report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.billing_constants import LIVE_STATUSES
from core.logging import get_logger
from core.time_utils import ensure_utc, utcnow
from models.billing import Organization, Subscription
from services.billing.status_evaluator import ExpireSubscription
from services.billing.status_service import SubscriptionStatusService, status_service as default_status_service

logger = get_logger(__name__)

_LIVE = tuple(status.value for status in LIVE_STATUSES)


def _overdue_stmt(now: datetime):
    return select(Subscription).where(Subscription.status.in_(_LIVE), Subscription.end_date < now)


def sweep_expired_subscriptions(
    session: Session,
    *,
    now: Optional[datetime] = None,
    status: Optional[SubscriptionStatusService] = None,
    dry_run: bool = False,
) -> List[ExpireSubscription]:
    """Apply the expiry transition to every live subscription past its end date."""

    now = ensure_utc(now or utcnow())
    service = status or default_status_service
    commands = [
        ExpireSubscription(
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            expired_at=ensure_utc(subscription.end_date),
        )
        for subscription in session.scalars(_overdue_stmt(now))
    ]
    if dry_run:
        return commands

    applied: List[ExpireSubscription] = []
    for command in commands:
        if service.apply_expiry(session, command, source="sweep"):
            applied.append(command)
    session.commit()
    logger.info("Expiry sweep marked %d of %d overdue subscription(s) inactive.", len(applied), len(commands))
    return applied


@dataclass
class SubscriptionReport:
    generated_at: datetime
    total_organizations: int = 0
    organizations_without_subscription: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    expiring_soon: List[Dict[str, str]] = field(default_factory=list)
    overdue: List[Dict[str, str]] = field(default_factory=list)


def build_subscription_report(
    session: Session,
    *,
    now: Optional[datetime] = None,
    warning_days: int = 7,
) -> SubscriptionReport:
    now = ensure_utc(now or utcnow())
    report = SubscriptionReport(generated_at=now)
    report.total_organizations = int(session.scalar(select(func.count()).select_from(Organization)) or 0)
    report.organizations_without_subscription = int(
        session.scalar(
            select(func.count())
            .select_from(Organization)
            .where(~select(Subscription.id).where(Subscription.organization_id == Organization.id).exists())
        )
        or 0
    )
    for status, count in session.execute(select(Subscription.status, func.count()).group_by(Subscription.status)):
        report.by_status[status] = int(count)

    horizon = now + timedelta(days=warning_days)
    soon_stmt = (
        select(Subscription)
        .where(Subscription.status.in_(_LIVE), Subscription.end_date >= now, Subscription.end_date <= horizon)
        .order_by(Subscription.end_date)
    )
    for subscription in session.scalars(soon_stmt):
        report.expiring_soon.append(
            {
                "organizationId": str(subscription.organization_id),
                "status": subscription.status,
                "endDate": ensure_utc(subscription.end_date).isoformat(),
            }
        )
    for subscription in session.scalars(_overdue_stmt(now).order_by(Subscription.end_date)):
        report.overdue.append(
            {
                "organizationId": str(subscription.organization_id),
                "status": subscription.status,
                "endDate": ensure_utc(subscription.end_date).isoformat(),
            }
        )
    return report


__all__ = ["SubscriptionReport", "build_subscription_report", "sweep_expired_subscriptions"]
