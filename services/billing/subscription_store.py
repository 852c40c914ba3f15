"""Loading, locking and saving subscription records.

Writers load the subscription with ``SELECT ... FOR UPDATE`` and flush through
:func:`flush_changes`, which turns a version mismatch from the mapper's
``version_id_col`` into :class:`ConcurrentUpdate`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.billing_constants import DeactivationSource
from core.logging import get_logger
from core.time_utils import ensure_utc
from models.billing import Organization, Subscription, SubscriptionPayment
from services.billing.errors import ConcurrentUpdate, OrganizationNotFound, SubscriptionNotFound
from services.billing.status_evaluator import OrganizationState, SubscriptionState

logger = get_logger(__name__)


def get_organization(session: Session, org_id: uuid.UUID, *, for_update: bool = False) -> Organization:
    stmt = select(Organization).where(Organization.id == org_id)
    if for_update:
        stmt = stmt.with_for_update()
    organization = session.scalars(stmt).first()
    if organization is None:
        raise OrganizationNotFound(org_id)
    return organization


def find_subscription(session: Session, org_id: uuid.UUID, *, for_update: bool = False) -> Optional[Subscription]:
    stmt = select(Subscription).where(Subscription.organization_id == org_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).first()


def require_subscription(session: Session, org_id: uuid.UUID, *, for_update: bool = False) -> Subscription:
    subscription = find_subscription(session, org_id, for_update=for_update)
    if subscription is None:
        raise SubscriptionNotFound(org_id)
    return subscription


def find_by_gateway_id(
    session: Session, gateway_subscription_id: Optional[str], *, for_update: bool = False
) -> Optional[Subscription]:
    if not gateway_subscription_id:
        return None
    stmt = select(Subscription).where(Subscription.gateway_subscription_id == gateway_subscription_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).first()


def flush_changes(session: Session) -> None:
    try:
        session.flush()
    except StaleDataError as exc:
        session.rollback()
        logger.warning("Optimistic concurrency check failed: %s", exc)
        raise ConcurrentUpdate() from exc


def organization_state(organization: Organization) -> OrganizationState:
    return OrganizationState(
        id=organization.id,
        is_active=bool(organization.is_active),
        subscription_type=organization.subscription_type,
        created_at=ensure_utc(organization.created_at),
    )


def subscription_state(subscription: Subscription) -> SubscriptionState:
    return SubscriptionState(
        id=subscription.id,
        status=subscription.status,
        end_date=ensure_utc(subscription.end_date),
        plan_name=subscription.plan.name if subscription.plan is not None else None,
        trial_end_date=ensure_utc(subscription.trial_end_date),
        billing_cycle=subscription.billing_cycle,
    )


def deactivate_organization(organization: Organization, source: DeactivationSource) -> bool:
    if not organization.is_active:
        return False
    organization.is_active = False
    organization.deactivation_source = source.value
    logger.info("Organization %s deactivated (source=%s).", organization.id, source.value)
    return True


def reactivate_after_payment(organization: Organization) -> bool:
    """Undo a billing deactivation. Administrative deactivation is left in place."""

    if organization.is_active or organization.deactivation_source != DeactivationSource.BILLING.value:
        return False
    organization.is_active = True
    organization.deactivation_source = None
    logger.info("Organization %s reactivated after payment.", organization.id)
    return True


def next_transaction_id(session: Session, now: datetime) -> str:
    """Allocate ``SUB-PMT-<year>-<n>``, skipping numbers that are already taken."""

    year = ensure_utc(now).year
    prefix = f"SUB-PMT-{year}-"
    sequence = int(
        session.scalar(
            select(func.count())
            .select_from(SubscriptionPayment)
            .where(SubscriptionPayment.transaction_id.like(f"{prefix}%"))
        )
        or 0
    )
    while True:
        sequence += 1
        candidate = f"{prefix}{sequence:06d}"
        taken = session.scalar(
            select(SubscriptionPayment.id).where(SubscriptionPayment.transaction_id == candidate)
        )
        if taken is None:
            return candidate


def list_payments(
    session: Session,
    *,
    org_id: Optional[uuid.UUID] = None,
    limit: int = 100,
) -> List[SubscriptionPayment]:
    """Payment history, newest first. ``org_id=None`` lists every organization."""

    stmt = select(SubscriptionPayment).order_by(
        SubscriptionPayment.paid_at.desc(), SubscriptionPayment.created_at.desc()
    )
    if org_id is not None:
        stmt = stmt.where(SubscriptionPayment.organization_id == org_id)
    return list(session.scalars(stmt.limit(limit)))


__all__ = [
    "deactivate_organization",
    "find_by_gateway_id",
    "find_subscription",
    "flush_changes",
    "get_organization",
    "list_payments",
    "next_transaction_id",
    "organization_state",
    "reactivate_after_payment",
    "require_subscription",
    "subscription_state",
]
