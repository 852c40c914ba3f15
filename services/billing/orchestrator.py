"""Plan changes and manual payment collection."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.billing_constants import (
    BillingCycle,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
)
from core.logging import get_logger
from core.time_utils import add_months, ensure_utc, utcnow
from models.billing import Subscription, SubscriptionPayment, SubscriptionPlan
from services.billing import plan_catalog, subscription_store
from services.billing.errors import (
    BillingError,
    DuplicateTransaction,
    GatewayCallFailed,
    PaymentMethodRequired,
    PlanNotFound,
    PlanRequired,
)
from services.billing.gateway import StripeApiError, StripeClient, get_stripe_client
from services.billing.metrics import GATEWAY_FAILURES
from services.billing.status_cache import StatusCache, status_cache as default_status_cache

logger = get_logger(__name__)

_GATEWAY_MANAGED_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value, SubscriptionStatus.PAST_DUE.value}
)


@dataclass(frozen=True)
class PlanChangeResult:
    changed: bool
    subscription_id: uuid.UUID
    plan_id: Optional[uuid.UUID]
    plan_name: Optional[str]
    billing_cycle: str
    amount: Decimal
    currency: str
    gateway_synced: bool = False


def cycle_end(start: datetime, cycle: BillingCycle | str) -> datetime:
    months = 12 if BillingCycle(cycle) is BillingCycle.YEARLY else 1
    return add_months(ensure_utc(start), months)


def _result(subscription: Subscription, *, changed: bool, gateway_synced: bool = False) -> PlanChangeResult:
    return PlanChangeResult(
        changed=changed,
        subscription_id=subscription.id,
        plan_id=subscription.plan_id,
        plan_name=subscription.plan.name if subscription.plan is not None else None,
        billing_cycle=subscription.billing_cycle,
        amount=Decimal(subscription.amount),
        currency=subscription.currency,
        gateway_synced=gateway_synced,
    )


def has_payment_method(subscription: Subscription) -> bool:
    """Whether the stored subscription already carries a usable payment instrument."""
    if subscription.gateway_customer_id:
        return True
    return subscription.payment_method != PaymentMethod.MANUAL.value


@dataclass(frozen=True)
class _PendingPlanChange:
    subscription: Subscription
    plan: SubscriptionPlan
    target: plan_catalog.PlanSnapshot
    cycle: BillingCycle
    price_id: Optional[str]
    idempotency_key: str


class SubscriptionOrchestrator:
    def __init__(
        self,
        *,
        gateway_factory: Callable[[], StripeClient] = get_stripe_client,
        cache: Optional[StatusCache] = None,
    ) -> None:
        self._gateway_factory = gateway_factory
        self._cache = cache if cache is not None else default_status_cache

    async def change_plan(
        self,
        session: Session,
        org_id: uuid.UUID,
        plan_id: uuid.UUID,
        billing_cycle: BillingCycle | str,
    ) -> PlanChangeResult:
        """Move the organization to ``plan_id``.

        The gateway is updated first. If that call fails or times out the local
        record keeps its previous plan, amount and cycle, and the error surfaces
        as :class:`GatewayCallFailed`. Database work runs in the threadpool so the
        row lock never blocks the event loop.
        """

        pending = await run_in_threadpool(self._prepare_plan_change, session, org_id, plan_id, BillingCycle(billing_cycle))
        if isinstance(pending, PlanChangeResult):
            return pending

        gateway_synced = False
        if pending.price_id is not None:
            try:
                await self._gateway_factory().swap_subscription_price(
                    pending.subscription.gateway_subscription_id,
                    pending.price_id,
                    idempotency_key=pending.idempotency_key,
                )
            except StripeApiError as exc:
                GATEWAY_FAILURES.labels(operation="swap_subscription_price").inc()
                await run_in_threadpool(session.rollback)
                logger.warning("Plan change for org %s aborted: %s", org_id, exc)
                raise GatewayCallFailed(str(exc), operation="change_plan", gateway_status=exc.status_code) from exc
            gateway_synced = True

        return await run_in_threadpool(self._apply_plan_change, session, org_id, pending, gateway_synced)

    def _prepare_plan_change(
        self,
        session: Session,
        org_id: uuid.UUID,
        plan_id: uuid.UUID,
        cycle: BillingCycle,
    ) -> PlanChangeResult | _PendingPlanChange:
        subscription = subscription_store.require_subscription(session, org_id, for_update=True)
        plan = plan_catalog.get_plan(session, plan_id)
        if not plan.is_active:
            raise PlanNotFound(plan_id)

        if subscription.plan_id == plan.id and subscription.billing_cycle == cycle.value:
            return _result(subscription, changed=False)

        target = plan_catalog.snapshot_plan(plan)
        if target.is_paid and not has_payment_method(subscription):
            raise PaymentMethodRequired()

        price_id: Optional[str] = None
        if subscription.gateway_subscription_id and subscription.status in _GATEWAY_MANAGED_STATUSES:
            price_id = target.gateway_price_for(cycle)
            if not price_id:
                raise BillingError(
                    f"Plan '{plan.name}' has no gateway price for {cycle.value} billing.",
                    code="subscription_plan.gateway_price_missing",
                )
        return _PendingPlanChange(
            subscription=subscription,
            plan=plan,
            target=target,
            cycle=cycle,
            price_id=price_id,
            idempotency_key=f"plan-change-{subscription.id}-{plan.id}-{cycle.value}-{subscription.version}",
        )

    def _apply_plan_change(
        self,
        session: Session,
        org_id: uuid.UUID,
        pending: _PendingPlanChange,
        gateway_synced: bool,
    ) -> PlanChangeResult:
        subscription, plan, cycle = pending.subscription, pending.plan, pending.cycle
        previous_plan = subscription.plan_id
        subscription.plan_id = plan.id
        subscription.plan = plan
        subscription.billing_cycle = cycle.value
        subscription.amount = pending.target.price_for(cycle)
        subscription.currency = plan.currency
        subscription_store.flush_changes(session)
        session.commit()
        self._cache.invalidate(org_id)
        logger.info(
            "Org %s moved from plan %s to %s (%s, gateway_synced=%s).",
            org_id,
            previous_plan,
            plan.id,
            cycle.value,
            gateway_synced,
        )
        return _result(subscription, changed=True, gateway_synced=gateway_synced)

    def record_manual_payment(
        self,
        session: Session,
        org_id: uuid.UUID,
        *,
        amount: Optional[Decimal] = None,
        payment_method: str = PaymentMethod.CASH.value,
        billing_cycle: Optional[str] = None,
        transaction_id: Optional[str] = None,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionPayment:
        """Record an offline payment and extend the subscription by one billing cycle."""

        now = ensure_utc(now or utcnow())
        method = PaymentMethod(payment_method)
        subscription = subscription_store.require_subscription(session, org_id, for_update=True)
        if subscription.plan_id is None:
            raise PlanRequired()
        cycle = BillingCycle(billing_cycle or subscription.billing_cycle)
        if transaction_id:
            taken = session.scalar(
                select(SubscriptionPayment.id).where(SubscriptionPayment.transaction_id == transaction_id)
            )
            if taken is not None:
                raise DuplicateTransaction(transaction_id)

        payment = SubscriptionPayment(
            organization_id=org_id,
            subscription_id=subscription.id,
            amount=Decimal(amount) if amount is not None else Decimal(subscription.amount),
            currency=subscription.currency,
            payment_method=method.value,
            billing_cycle=cycle.value,
            transaction_id=transaction_id or subscription_store.next_transaction_id(session, now),
            status=PaymentStatus.COMPLETED.value,
            processed_by=processed_by,
            notes=notes,
            paid_at=now,
        )
        session.add(payment)

        base = max(now, ensure_utc(subscription.end_date))
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.billing_cycle = cycle.value
        subscription.end_date = cycle_end(base, cycle)
        subscription.next_payment_date = subscription.end_date
        subscription.last_payment_date = now
        if method is not PaymentMethod.STRIPE:
            subscription.payment_method = method.value
        subscription_store.reactivate_after_payment(subscription.organization)
        subscription_store.flush_changes(session)
        session.commit()
        self._cache.invalidate(org_id)
        logger.info(
            "Recorded %s payment %s for org %s; subscription now ends %s.",
            method.value,
            payment.transaction_id,
            org_id,
            ensure_utc(subscription.end_date).isoformat(),
        )
        return payment


subscription_orchestrator = SubscriptionOrchestrator()

__all__ = ["PlanChangeResult", "SubscriptionOrchestrator", "cycle_end", "has_payment_method", "subscription_orchestrator"]
