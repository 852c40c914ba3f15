"""Plan catalog: immutable plan snapshots plus the administrative CRUD used by the plans API."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from core.billing_constants import (
    ALL_FEATURES,
    UNLIMITED,
    BillingCycle,
    MeteredResource,
    PlanFeature,
)
from core.logging import get_logger
from models.billing import Subscription, SubscriptionPlan
from services.billing.errors import PlanInUse, PlanNotFound

logger = get_logger(__name__)

UNLIMITED_PLAN_NAME = "Unlimited Account"
TRIAL_PLAN_NAME = "Trial Account"
SUPER_ADMIN_PLAN_NAME = "Administrator"

_LIMIT_FIELDS = ("max_patients", "max_users", "max_appointments")
_PRICE_FIELDS = ("monthly_price", "yearly_price")
_EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "currency",
        "gateway_price_id_monthly",
        "gateway_price_id_yearly",
        "is_active",
        "is_default",
        "sort_order",
        *_LIMIT_FIELDS,
        *_PRICE_FIELDS,
        *(feature.value for feature in PlanFeature),
    }
)


@dataclass(frozen=True)
class PlanLimits:
    max_patients: int = UNLIMITED
    max_users: int = UNLIMITED
    max_appointments: int = UNLIMITED

    def for_resource(self, resource: MeteredResource | str) -> int:
        return getattr(self, f"max_{MeteredResource(resource).value}")

    def as_dict(self) -> Dict[str, int]:
        return {resource.value: self.for_resource(resource) for resource in MeteredResource}


@dataclass(frozen=True)
class PlanSnapshot:
    """Read-only view of a plan detached from the session."""

    name: str
    limits: PlanLimits = field(default_factory=PlanLimits)
    features: FrozenSet[str] = frozenset()
    id: Optional[uuid.UUID] = None
    monthly_price: Decimal = Decimal("0")
    yearly_price: Decimal = Decimal("0")
    currency: str = "USD"
    gateway_price_id_monthly: Optional[str] = None
    gateway_price_id_yearly: Optional[str] = None
    is_active: bool = True

    def price_for(self, cycle: BillingCycle | str) -> Decimal:
        if BillingCycle(cycle) is BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def gateway_price_for(self, cycle: BillingCycle | str) -> Optional[str]:
        if BillingCycle(cycle) is BillingCycle.YEARLY:
            return self.gateway_price_id_yearly
        return self.gateway_price_id_monthly

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0 or self.yearly_price > 0

    def allows(self, feature: str) -> bool:
        return feature in self.features


_EVERYTHING = frozenset(feature.value for feature in ALL_FEATURES)

UNLIMITED_PLAN = PlanSnapshot(name=UNLIMITED_PLAN_NAME, features=_EVERYTHING)
TRIAL_PLAN = PlanSnapshot(name=TRIAL_PLAN_NAME, features=_EVERYTHING)
SUPER_ADMIN_PLAN = PlanSnapshot(name=SUPER_ADMIN_PLAN_NAME, features=_EVERYTHING)


def snapshot_plan(plan: SubscriptionPlan) -> PlanSnapshot:
    enabled = frozenset(feature.value for feature in PlanFeature if getattr(plan, feature.value))
    return PlanSnapshot(
        id=plan.id,
        name=plan.name,
        limits=PlanLimits(
            max_patients=int(plan.max_patients),
            max_users=int(plan.max_users),
            max_appointments=int(plan.max_appointments),
        ),
        features=enabled,
        monthly_price=Decimal(plan.monthly_price),
        yearly_price=Decimal(plan.yearly_price),
        currency=plan.currency,
        gateway_price_id_monthly=plan.gateway_price_id_monthly,
        gateway_price_id_yearly=plan.gateway_price_id_yearly,
        is_active=bool(plan.is_active),
    )


def _validate_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - _EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
    cleaned = dict(fields)
    for name in _LIMIT_FIELDS:
        if name in cleaned:
            value = int(cleaned[name])
            if value < UNLIMITED:
                raise ValueError(f"{name} must be a non-negative integer or -1 for unlimited.")
            cleaned[name] = value
    for name in _PRICE_FIELDS:
        if name in cleaned:
            value = Decimal(str(cleaned[name]))
            if value < 0:
                raise ValueError(f"{name} must not be negative.")
            cleaned[name] = value
    if "currency" in cleaned and cleaned["currency"]:
        cleaned["currency"] = str(cleaned["currency"]).upper()
    if "name" in cleaned:
        name = str(cleaned["name"] or "").strip()
        if not name:
            raise ValueError("name must not be empty.")
        cleaned["name"] = name
    return cleaned


def get_plan(session: Session, plan_id: uuid.UUID) -> SubscriptionPlan:
    plan = session.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise PlanNotFound(plan_id)
    return plan


def list_plans(session: Session, *, include_inactive: bool = False) -> List[SubscriptionPlan]:
    stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order, SubscriptionPlan.monthly_price)
    if not include_inactive:
        stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
    return list(session.scalars(stmt))


def find_by_gateway_price(session: Session, price_id: Optional[str]) -> Optional[Tuple[SubscriptionPlan, BillingCycle]]:
    """Return the plan whose monthly or yearly gateway price is ``price_id``, with that cycle."""
    if not price_id:
        return None
    stmt = select(SubscriptionPlan).where(
        or_(
            SubscriptionPlan.gateway_price_id_monthly == price_id,
            SubscriptionPlan.gateway_price_id_yearly == price_id,
        )
    )
    plan = session.scalars(stmt).first()
    if plan is None:
        return None
    cycle = BillingCycle.YEARLY if plan.gateway_price_id_yearly == price_id else BillingCycle.MONTHLY
    return plan, cycle


def _ensure_unique_name(session: Session, name: str, *, exclude: Optional[uuid.UUID] = None) -> None:
    stmt = select(SubscriptionPlan.id).where(SubscriptionPlan.name == name)
    if exclude is not None:
        stmt = stmt.where(SubscriptionPlan.id != exclude)
    if session.scalar(stmt) is not None:
        raise ValueError(f"A plan named '{name}' already exists.")


def _clear_other_defaults(session: Session, keep: SubscriptionPlan) -> None:
    for other in session.scalars(select(SubscriptionPlan).where(SubscriptionPlan.is_default.is_(True))):
        if other.id != keep.id:
            other.is_default = False


def create_plan(session: Session, fields: Mapping[str, Any]) -> SubscriptionPlan:
    cleaned = _validate_fields(fields)
    for required in ("name", *_PRICE_FIELDS):
        if required not in cleaned:
            raise ValueError(f"{required} is required.")
    _ensure_unique_name(session, cleaned["name"])
    plan = SubscriptionPlan(**cleaned)
    session.add(plan)
    session.flush()
    if plan.is_default:
        _clear_other_defaults(session, plan)
    logger.info("Created subscription plan %s (%s).", plan.name, plan.id)
    return plan


def update_plan(session: Session, plan_id: uuid.UUID, changes: Mapping[str, Any]) -> SubscriptionPlan:
    plan = get_plan(session, plan_id)
    cleaned = _validate_fields(changes)
    if "name" in cleaned:
        _ensure_unique_name(session, cleaned["name"], exclude=plan.id)
    for key, value in cleaned.items():
        setattr(plan, key, value)
    if plan.is_default:
        _clear_other_defaults(session, plan)
    session.flush()
    logger.info("Updated subscription plan %s fields=%s.", plan.id, sorted(changes))
    return plan


def delete_plan(session: Session, plan_id: uuid.UUID) -> None:
    """Delete an unreferenced plan; plans still attached to a subscription are kept."""

    plan = get_plan(session, plan_id)
    references = session.scalar(select(func.count()).select_from(Subscription).where(Subscription.plan_id == plan.id))
    if references:
        raise PlanInUse(plan.name, int(references))
    session.delete(plan)
    session.flush()
    logger.info("Deleted subscription plan %s (%s).", plan.name, plan_id)


__all__ = [
    "PlanLimits",
    "PlanSnapshot",
    "SUPER_ADMIN_PLAN",
    "TRIAL_PLAN",
    "UNLIMITED_PLAN",
    "create_plan",
    "delete_plan",
    "find_by_gateway_price",
    "get_plan",
    "list_plans",
    "snapshot_plan",
    "update_plan",
]
