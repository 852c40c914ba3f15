"""Resolve which plan governs an organization right now."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from core.billing_constants import SUPER_ADMIN_ROLE, SubscriptionStatus, SubscriptionType
from core.logging import get_logger
from core.time_utils import ensure_utc, utcnow
from services.billing import subscription_store
from services.billing.errors import SubscriptionInactive
from services.billing.plan_catalog import (
    SUPER_ADMIN_PLAN,
    TRIAL_PLAN,
    UNLIMITED_PLAN,
    PlanSnapshot,
    snapshot_plan,
)
from services.billing.status_service import SubscriptionStatusService, status_service as default_status_service

logger = get_logger(__name__)


@dataclass(frozen=True)
class EntitlementContext:
    organization_id: uuid.UUID
    plan: PlanSnapshot
    source: str
    role: Optional[str] = None

    @property
    def plan_name(self) -> str:
        return self.plan.name


class EntitlementResolver:
    def __init__(self, *, status: Optional[SubscriptionStatusService] = None) -> None:
        self._status = status or default_status_service

    @property
    def status(self) -> SubscriptionStatusService:
        return self._status

    def resolve(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementContext:
        """Return the governing plan or raise :class:`SubscriptionInactive`.

        Super administrators and unlimited organizations are never limited. The
        implicit trial and ``trialing`` subscriptions get every feature and no
        limits. Otherwise the subscription's plan applies.
        """

        if role == SUPER_ADMIN_ROLE:
            return EntitlementContext(org_id, SUPER_ADMIN_PLAN, "super_admin", role)

        now = ensure_utc(now or utcnow())
        outcome = self._status.check(session, org_id, now=now)
        if not outcome.is_active:
            raise SubscriptionInactive(outcome.reason.value, outcome.message, redirect_to=outcome.remediation)

        organization = subscription_store.get_organization(session, org_id)
        if organization.subscription_type == SubscriptionType.UNLIMITED.value:
            return EntitlementContext(org_id, UNLIMITED_PLAN, "unlimited", role)

        subscription = subscription_store.find_subscription(session, org_id)
        if subscription is None:
            return EntitlementContext(org_id, TRIAL_PLAN, "implicit_trial", role)
        if subscription.status == SubscriptionStatus.TRIALING.value or subscription.plan is None:
            return EntitlementContext(org_id, TRIAL_PLAN, "trial", role)
        return EntitlementContext(org_id, snapshot_plan(subscription.plan), "plan", role)


entitlement_resolver = EntitlementResolver()

__all__ = ["EntitlementContext", "EntitlementResolver", "entitlement_resolver"]
