"""Administrator operations: manual subscription creation, cancellation and organization activation."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.billing_constants import (
    BillingCycle,
    DeactivationSource,
    LIVE_STATUSES,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionType,
)
from core.logging import get_logger
from core.time_utils import ensure_utc, utcnow
from models.billing import Organization, Subscription, SubscriptionPayment
from services.billing import plan_catalog, subscription_store
from services.billing.errors import GatewayCallFailed, PlanNotFound, SubscriptionExists
from services.billing.gateway import StripeApiError, StripeClient, get_stripe_client
from services.billing.metrics import GATEWAY_FAILURES
from services.billing.orchestrator import cycle_end
from services.billing.status_cache import StatusCache, status_cache as default_status_cache
from services.billing.trial import configured_trial_days

logger = get_logger(__name__)


class SubscriptionAdmin:
    def __init__(
        self,
        *,
        gateway_factory: Callable[[], StripeClient] = get_stripe_client,
        cache: Optional[StatusCache] = None,
    ) -> None:
        self._gateway_factory = gateway_factory
        self._cache = cache if cache is not None else default_status_cache

    def create_subscription(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        plan_id: Optional[uuid.UUID] = None,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        payment_method: str = PaymentMethod.MANUAL.value,
        trial_days: Optional[int] = None,
        gateway_customer_id: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        notes: Optional[str] = None,
        processed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Create (or renew in place) the organization's subscription.

        Without a plan this starts a plan-less trial of ``trial_days`` (the
        configured default when omitted). With a plan and ``trial_days`` the
        subscription starts ``trialing``; otherwise it is active immediately and
        cash payments are written to the payment history.
        """

        now = ensure_utc(now or utcnow())
        cycle = BillingCycle(billing_cycle)
        method = PaymentMethod(payment_method)
        organization = subscription_store.get_organization(session, org_id)
        subscription = subscription_store.find_subscription(session, org_id, for_update=True)
        if subscription is not None and subscription.status in LIVE_STATUSES and ensure_utc(subscription.end_date) >= now:
            raise SubscriptionExists()

        plan = None
        if plan_id is not None:
            plan = plan_catalog.get_plan(session, plan_id)
            if not plan.is_active:
                raise PlanNotFound(plan_id)
        if trial_days is not None and trial_days < 0:
            raise ValueError("trial_days must not be negative.")

        if subscription is None:
            subscription = Subscription(organization_id=org_id)
            session.add(subscription)

        subscription.start_date = now
        subscription.billing_cycle = cycle.value
        subscription.payment_method = method.value
        subscription.gateway_customer_id = gateway_customer_id or organization.gateway_customer_id
        subscription.gateway_subscription_id = gateway_subscription_id
        subscription.notes = notes
        subscription.cancelled_at = None
        subscription.cancel_reason = None
        subscription.cancel_at_period_end = False
        subscription.auto_renew = True
        subscription.last_gateway_event_at = None

        if plan is None:
            days = configured_trial_days() if trial_days is None else trial_days
            trial_end = now + timedelta(days=days)
            subscription.plan_id = None
            subscription.status = SubscriptionStatus.TRIALING.value
            subscription.amount = Decimal("0")
            subscription.currency = "USD"
            subscription.trial_end_date = trial_end
            subscription.end_date = trial_end
            subscription.next_payment_date = None
        else:
            snapshot = plan_catalog.snapshot_plan(plan)
            subscription.plan_id = plan.id
            subscription.amount = snapshot.price_for(cycle)
            subscription.currency = plan.currency
            subscription.end_date = cycle_end(now, cycle)
            subscription.next_payment_date = subscription.end_date
            if trial_days:
                subscription.status = SubscriptionStatus.TRIALING.value
                subscription.trial_end_date = now + timedelta(days=trial_days)
            else:
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.trial_end_date = None

        subscription_store.flush_changes(session)
        if plan is not None and method is PaymentMethod.CASH and not trial_days:
            session.add(
                SubscriptionPayment(
                    organization_id=org_id,
                    subscription_id=subscription.id,
                    amount=Decimal(subscription.amount),
                    currency=subscription.currency,
                    payment_method=method.value,
                    billing_cycle=cycle.value,
                    transaction_id=subscription_store.next_transaction_id(session, now),
                    status=PaymentStatus.COMPLETED.value,
                    processed_by=processed_by,
                    paid_at=now,
                )
            )
            subscription.last_payment_date = now
        subscription_store.reactivate_after_payment(organization)
        subscription_store.flush_changes(session)
        session.commit()
        self._cache.invalidate(org_id)
        logger.info(
            "Created %s subscription for org %s (plan=%s, cycle=%s).",
            subscription.status,
            org_id,
            plan.name if plan is not None else None,
            cycle.value,
        )
        return subscription

    async def cancel_subscription(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Cancel at the gateway first; the local record only changes once the gateway agreed."""

        now = ensure_utc(now or utcnow())
        subscription = await run_in_threadpool(subscription_store.require_subscription, session, org_id, for_update=True)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return subscription

        if subscription.gateway_subscription_id:
            try:
                await self._gateway_factory().cancel_subscription(subscription.gateway_subscription_id)
            except StripeApiError as exc:
                GATEWAY_FAILURES.labels(operation="cancel_subscription").inc()
                await run_in_threadpool(session.rollback)
                logger.warning("Cancellation for org %s aborted: %s", org_id, exc)
                raise GatewayCallFailed(str(exc), operation="cancel_subscription", gateway_status=exc.status_code) from exc

        return await run_in_threadpool(self._apply_cancellation, session, subscription, reason=reason, now=now)

    def _apply_cancellation(
        self,
        session: Session,
        subscription: Subscription,
        *,
        reason: Optional[str],
        now: datetime,
    ) -> Subscription:
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now
        subscription.cancel_reason = reason
        subscription.auto_renew = False
        subscription.cancel_at_period_end = False
        subscription_store.flush_changes(session)
        session.commit()
        self._cache.invalidate(subscription.organization_id)
        logger.info("Cancelled subscription for org %s (reason=%s).", subscription.organization_id, reason)
        return subscription

    def update_organization(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        is_active: Optional[bool] = None,
        subscription_type: Optional[str] = None,
    ) -> Organization:
        organization = subscription_store.get_organization(session, org_id, for_update=True)
        if is_active is True and not organization.is_active:
            organization.is_active = True
            organization.deactivation_source = None
            logger.info("Organization %s activated by an administrator.", org_id)
        elif is_active is False:
            organization.is_active = False
            organization.deactivation_source = DeactivationSource.ADMIN.value
            logger.info("Organization %s deactivated by an administrator.", org_id)
        if subscription_type is not None:
            organization.subscription_type = SubscriptionType(subscription_type).value
        session.flush()
        session.commit()
        self._cache.invalidate(org_id)
        return organization


subscription_admin = SubscriptionAdmin()

__all__ = ["SubscriptionAdmin", "subscription_admin"]
