"""Reserve, release and report metered usage against the governing plan."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.billing_constants import MONTHLY_RESOURCES, MeteredResource
from core.logging import get_logger
from core.time_utils import ensure_utc, month_bounds, utcnow
from services.billing import usage_counter
from services.billing.entitlements import EntitlementContext, EntitlementResolver, entitlement_resolver
from services.billing.errors import LimitExceeded
from services.billing.limit_validator import LimitDecision, check_limit
from services.billing.metrics import LIMIT_DENIALS, USAGE_RECOUNTS

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageReservation:
    resource: str
    used: int
    limit: int
    plan_name: str


@dataclass(frozen=True)
class ResourceUsage:
    resource: str
    used: int
    limit: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "used": self.used,
            "limit": self.limit,
            "periodStart": self.period_start.isoformat() if self.period_start else None,
            "periodEnd": self.period_end.isoformat() if self.period_end else None,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    organization_id: uuid.UUID
    plan_name: str
    period_start: datetime
    period_end: datetime
    resources: Dict[str, ResourceUsage]


class MeteringService:
    def __init__(self, *, entitlements: Optional[EntitlementResolver] = None) -> None:
        self._entitlements = entitlements or entitlement_resolver

    def _context(
        self, session: Session, org_id: uuid.UUID, role: Optional[str], now: datetime
    ) -> EntitlementContext:
        return self._entitlements.resolve(session, org_id, role=role, now=now)

    def check(
        self,
        session: Session,
        org_id: uuid.UUID,
        resource: MeteredResource | str,
        *,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LimitDecision:
        """Read-only answer to "may one more be created?" based on the authoritative count."""

        now = ensure_utc(now or utcnow())
        resource = MeteredResource(resource)
        context = self._context(session, org_id, role, now)
        current = usage_counter.count_records(session, org_id, resource, now)
        return check_limit(resource, context.plan.limits.for_resource(resource), current, plan_name=context.plan_name)

    def reserve(
        self,
        session: Session,
        org_id: uuid.UUID,
        resource: MeteredResource | str,
        *,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UsageReservation:
        """Claim one unit before the caller inserts the record in the same transaction.

        The cached counter is only trusted for allowing. A refusal is confirmed
        against the authoritative records, correcting a drifted cache and
        retrying once.
        """

        now = ensure_utc(now or utcnow())
        resource = MeteredResource(resource)
        context = self._context(session, org_id, role, now)
        limit = context.plan.limits.for_resource(resource)

        counter = usage_counter.load_counter(session, org_id, resource, now)
        if usage_counter.try_increment(session, counter, limit):
            return UsageReservation(resource.value, int(counter.count), limit, context.plan_name)

        actual = usage_counter.count_records(session, org_id, resource, now)
        USAGE_RECOUNTS.labels(resource=resource.value, trigger="ceiling").inc()
        cached = int(counter.count)
        if actual < cached and usage_counter.overwrite(session, counter, actual):
            logger.info(
                "Usage counter %s/%s drifted (cached=%s actual=%d); corrected.",
                org_id,
                resource.value,
                cached,
                actual,
            )
            if usage_counter.try_increment(session, counter, limit):
                return UsageReservation(resource.value, int(counter.count), limit, context.plan_name)

        decision = check_limit(resource, limit, actual, plan_name=context.plan_name)
        LIMIT_DENIALS.labels(resource=resource.value).inc()
        logger.info("Limit reached for org %s: %s %d/%d.", org_id, resource.value, actual, limit)
        if decision.allowed:
            # A concurrent reservation took the last unit after the recount.
            raise LimitExceeded(resource.value, limit, limit, context.plan_name)
        raise decision.error()

    def release(
        self,
        session: Session,
        org_id: uuid.UUID,
        resource: MeteredResource | str,
    ) -> bool:
        """Give back a unit after a successful deletion. Monthly creation counts are left alone."""

        resource = MeteredResource(resource)
        if resource in MONTHLY_RESOURCES:
            return False
        return usage_counter.decrement(session, org_id, resource)

    def usage_snapshot(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UsageSnapshot:
        """Recount every resource from the practice tables and rewrite the cached counters."""

        now = ensure_utc(now or utcnow())
        context = self._context(session, org_id, role, now)
        month_start, month_end = month_bounds(now)
        resources: Dict[str, ResourceUsage] = {}
        for resource in MeteredResource:
            counter = usage_counter.load_counter(session, org_id, resource, now)
            actual = usage_counter.count_records(session, org_id, resource, now)
            if actual != counter.count and usage_counter.overwrite(session, counter, actual):
                USAGE_RECOUNTS.labels(resource=resource.value, trigger="refresh").inc()
            monthly = resource in MONTHLY_RESOURCES
            resources[resource.value] = ResourceUsage(
                resource=resource.value,
                used=actual,
                limit=context.plan.limits.for_resource(resource),
                period_start=month_start if monthly else None,
                period_end=month_end if monthly else None,
            )
        return UsageSnapshot(
            organization_id=org_id,
            plan_name=context.plan_name,
            period_start=month_start,
            period_end=month_end,
            resources=resources,
        )


metering_service = MeteringService()

__all__ = ["MeteringService", "ResourceUsage", "UsageReservation", "UsageSnapshot", "metering_service"]
