"""Status checks backed by the database, the lazy expiry write and the status cache."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.billing_constants import LIVE_STATUSES, SubscriptionStatus
from core.logging import get_logger
from core.time_utils import ensure_utc, utcnow
from models.billing import Subscription
from services.billing import subscription_store
from services.billing.errors import SubscriptionInactive
from services.billing.metrics import LAZY_EXPIRIES, STATUS_EVALUATIONS
from services.billing.status_cache import StatusCache, status_cache as default_status_cache
from services.billing.status_evaluator import (
    ExpireSubscription,
    StatusEvaluation,
    StatusOutcome,
    evaluate_subscription_status,
)
from services.billing.trial import resolve_trial_window

logger = get_logger(__name__)


class SubscriptionStatusService:
    def __init__(self, *, cache: Optional[StatusCache] = None, trial_days: Optional[int] = None) -> None:
        self._cache = cache if cache is not None else default_status_cache
        self._trial_days = trial_days

    @property
    def cache(self) -> StatusCache:
        return self._cache

    def evaluate(self, session: Session, org_id: uuid.UUID, *, now: Optional[datetime] = None) -> StatusEvaluation:
        """Load the organization and its subscription and run the pure evaluator. No writes."""

        now = ensure_utc(now or utcnow())
        organization = subscription_store.get_organization(session, org_id)
        subscription = subscription_store.find_subscription(session, org_id)
        return evaluate_subscription_status(
            subscription_store.organization_state(organization),
            subscription_store.subscription_state(subscription) if subscription is not None else None,
            resolve_trial_window(organization.created_at, trial_days=self._trial_days),
            now,
        )

    def check(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        now: Optional[datetime] = None,
        use_cache: bool = True,
        commit: bool = True,
    ) -> StatusOutcome:
        now = ensure_utc(now or utcnow())
        if use_cache:
            cached = self._cache.get(org_id, now)
            if cached is not None:
                return cached

        evaluation = self.evaluate(session, org_id, now=now)
        if evaluation.command is not None and self.apply_expiry(session, evaluation.command):
            if commit:
                session.commit()

        outcome = evaluation.outcome
        STATUS_EVALUATIONS.labels(outcome="active" if outcome.is_active else outcome.reason.value).inc()
        self._cache.set(org_id, outcome, now)
        return outcome

    def require_active(self, session: Session, org_id: uuid.UUID, *, now: Optional[datetime] = None) -> StatusOutcome:
        outcome = self.check(session, org_id, now=now)
        if not outcome.is_active:
            raise SubscriptionInactive(outcome.reason.value, outcome.message, redirect_to=outcome.remediation)
        return outcome

    def apply_expiry(self, session: Session, command: ExpireSubscription, *, source: str = "lazy") -> bool:
        """Persist ``inactive`` under the row lock. Returns False when another writer got there first."""

        stmt = (
            select(Subscription)
            .where(Subscription.id == command.subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = session.scalars(stmt).first()
        if subscription is None or subscription.status not in LIVE_STATUSES:
            return False
        if ensure_utc(subscription.end_date) > command.expired_at:
            # Extended after the evaluation snapshot was taken.
            return False
        subscription.status = SubscriptionStatus.INACTIVE.value
        subscription_store.flush_changes(session)
        self._cache.invalidate(command.organization_id)
        LAZY_EXPIRIES.labels(source=source).inc()
        logger.info(
            "Subscription %s for org %s expired at %s; marked inactive.",
            command.subscription_id,
            command.organization_id,
            command.expired_at.isoformat(),
        )
        return True

    def invalidate(self, org_id: uuid.UUID) -> None:
        self._cache.invalidate(org_id)


status_service = SubscriptionStatusService()

__all__ = ["SubscriptionStatusService", "status_service"]
