"""Pure subscription status evaluation.

The evaluator never touches the database. When a live subscription is found
past its end date it returns an :class:`ExpireSubscription` command alongside
the outcome; :mod:`services.billing.status_service` decides when to persist it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from core.billing_constants import LIVE_STATUSES, SubscriptionStatus, SubscriptionType
from core.time_utils import days_until, ensure_utc
from services.billing.plan_catalog import TRIAL_PLAN_NAME, UNLIMITED_PLAN_NAME
from services.billing.trial import TrialWindow


class InactiveReason(str, Enum):
    ORGANIZATION_DEACTIVATED = "organization_deactivated"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    TRIAL_EXPIRED = "trial_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


REASON_MESSAGES: Dict[InactiveReason, str] = {
    InactiveReason.ORGANIZATION_DEACTIVATED: "organization deactivated",
    InactiveReason.NO_SUBSCRIPTION: "no active subscription found",
    InactiveReason.SUBSCRIPTION_EXPIRED: "subscription expired",
    InactiveReason.TRIAL_EXPIRED: "trial period expired",
    InactiveReason.PAST_DUE: "subscription payment is past due",
    InactiveReason.UNPAID: "subscription is unpaid",
    InactiveReason.CANCELLED: "subscription cancelled",
    InactiveReason.INACTIVE: "subscription inactive",
}

DEACTIVATED_REDIRECT = "/subscription/organization-deactivated"
EXPIRED_REDIRECT = "/subscription/expired"

_STATUS_REASONS: Dict[str, InactiveReason] = {
    SubscriptionStatus.PAST_DUE.value: InactiveReason.PAST_DUE,
    SubscriptionStatus.UNPAID.value: InactiveReason.UNPAID,
    SubscriptionStatus.CANCELLED.value: InactiveReason.CANCELLED,
    SubscriptionStatus.INACTIVE.value: InactiveReason.INACTIVE,
}


@dataclass(frozen=True)
class OrganizationState:
    id: uuid.UUID
    is_active: bool
    subscription_type: str
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionState:
    id: uuid.UUID
    status: str
    end_date: datetime
    plan_name: Optional[str] = None
    trial_end_date: Optional[datetime] = None
    billing_cycle: Optional[str] = None


@dataclass(frozen=True)
class ActiveStatus:
    status: str
    plan_name: str
    days_remaining: Optional[int] = None
    ends_at: Optional[datetime] = None
    billing_cycle: Optional[str] = None

    is_active = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": True,
            "status": self.status,
            "planName": self.plan_name,
            "daysRemaining": self.days_remaining,
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
            "billingCycle": self.billing_cycle,
        }


@dataclass(frozen=True)
class InactiveStatus:
    reason: InactiveReason
    message: str
    remediation: str
    expired_at: Optional[datetime] = None

    is_active = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": False,
            "reason": self.reason.value,
            "message": self.message,
            "redirectTo": self.remediation,
            "expiredAt": self.expired_at.isoformat() if self.expired_at else None,
        }


StatusOutcome = Union[ActiveStatus, InactiveStatus]


@dataclass(frozen=True)
class ExpireSubscription:
    """Persist ``status = inactive`` for a live subscription whose end date has passed."""

    organization_id: uuid.UUID
    subscription_id: uuid.UUID
    expired_at: datetime


@dataclass(frozen=True)
class StatusEvaluation:
    outcome: StatusOutcome
    command: Optional[ExpireSubscription] = None


def inactive(reason: InactiveReason, *, expired_at: Optional[datetime] = None) -> InactiveStatus:
    remediation = DEACTIVATED_REDIRECT if reason is InactiveReason.ORGANIZATION_DEACTIVATED else EXPIRED_REDIRECT
    return InactiveStatus(reason=reason, message=REASON_MESSAGES[reason], remediation=remediation, expired_at=expired_at)


def outcome_from_dict(payload: Dict[str, Any]) -> StatusOutcome:
    """Rebuild an outcome serialised with ``to_dict`` (used by the Redis cache backend)."""

    def _parse(value: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(value)) if value else None

    if payload.get("isActive"):
        return ActiveStatus(
            status=payload["status"],
            plan_name=payload["planName"],
            days_remaining=payload.get("daysRemaining"),
            ends_at=_parse(payload.get("endsAt")),
            billing_cycle=payload.get("billingCycle"),
        )
    return inactive(InactiveReason(payload["reason"]), expired_at=_parse(payload.get("expiredAt")))


def evaluate_subscription_status(
    organization: OrganizationState,
    subscription: Optional[SubscriptionState],
    trial_window: TrialWindow,
    now: datetime,
) -> StatusEvaluation:
    now = ensure_utc(now)

    if not organization.is_active:
        return StatusEvaluation(inactive(InactiveReason.ORGANIZATION_DEACTIVATED))

    if organization.subscription_type == SubscriptionType.UNLIMITED.value:
        return StatusEvaluation(ActiveStatus(status=SubscriptionStatus.ACTIVE.value, plan_name=UNLIMITED_PLAN_NAME))

    if subscription is None:
        if trial_window.is_open(now):
            return StatusEvaluation(
                ActiveStatus(
                    status=SubscriptionStatus.TRIALING.value,
                    plan_name=TRIAL_PLAN_NAME,
                    days_remaining=trial_window.days_remaining(now),
                    ends_at=trial_window.ends_at,
                )
            )
        return StatusEvaluation(inactive(InactiveReason.NO_SUBSCRIPTION, expired_at=trial_window.ends_at))

    if subscription.status in LIVE_STATUSES:
        end_date = ensure_utc(subscription.end_date)
        if end_date < now:
            command = ExpireSubscription(
                organization_id=organization.id,
                subscription_id=subscription.id,
                expired_at=end_date,
            )
            return StatusEvaluation(inactive(InactiveReason.SUBSCRIPTION_EXPIRED, expired_at=end_date), command)

        trial_end = ensure_utc(subscription.trial_end_date)
        if subscription.status == SubscriptionStatus.TRIALING.value and trial_end is not None and trial_end < now:
            return StatusEvaluation(inactive(InactiveReason.TRIAL_EXPIRED, expired_at=trial_end))

        plan_name = subscription.plan_name
        if plan_name is None:
            plan_name = TRIAL_PLAN_NAME
        return StatusEvaluation(
            ActiveStatus(
                status=subscription.status,
                plan_name=plan_name,
                days_remaining=days_until(end_date, now),
                ends_at=end_date,
                billing_cycle=subscription.billing_cycle,
            )
        )

    reason = _STATUS_REASONS.get(subscription.status, InactiveReason.INACTIVE)
    return StatusEvaluation(inactive(reason))


__all__ = [
    "ActiveStatus",
    "DEACTIVATED_REDIRECT",
    "EXPIRED_REDIRECT",
    "ExpireSubscription",
    "InactiveReason",
    "InactiveStatus",
    "OrganizationState",
    "StatusEvaluation",
    "StatusOutcome",
    "SubscriptionState",
    "evaluate_subscription_status",
    "inactive",
    "outcome_from_dict",
]
