"""Shared billing enums used across services, routers and scripts."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet

UNLIMITED = -1
DEFAULT_TRIAL_DAYS = 14


class _StrEnum(str, Enum):
    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class SubscriptionStatus(_StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


LIVE_STATUSES: FrozenSet[SubscriptionStatus] = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class BillingCycle(_StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMethod(_StrEnum):
    STRIPE = "stripe"
    MANUAL = "manual"
    CASH = "cash"
    CHECK = "check"


class PaymentStatus(_StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionType(_StrEnum):
    REGULAR = "regular"
    UNLIMITED = "unlimited"


class DeactivationSource(_StrEnum):
    ADMIN = "admin"
    BILLING = "billing"


class MeteredResource(_StrEnum):
    PATIENTS = "patients"
    USERS = "users"
    APPOINTMENTS = "appointments"


MONTHLY_RESOURCES: FrozenSet[MeteredResource] = frozenset({MeteredResource.PATIENTS, MeteredResource.APPOINTMENTS})


class PlanFeature(_StrEnum):
    CUSTOM_BRANDING = "custom_branding"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"
    ADVANCED_REPORTS = "advanced_reports"
    SMS_NOTIFICATIONS = "sms_notifications"
    EMAIL_NOTIFICATIONS = "email_notifications"
    DATA_BACKUP = "data_backup"


ALL_FEATURES: FrozenSet[PlanFeature] = frozenset(PlanFeature)

SUPER_ADMIN_ROLE = "super_admin"
ORG_ADMIN_ROLES: FrozenSet[str] = frozenset({SUPER_ADMIN_ROLE, "admin"})

__all__ = [
    "ALL_FEATURES",
    "BillingCycle",
    "DEFAULT_TRIAL_DAYS",
    "DeactivationSource",
    "LIVE_STATUSES",
    "MONTHLY_RESOURCES",
    "MeteredResource",
    "ORG_ADMIN_ROLES",
    "PaymentMethod",
    "PaymentStatus",
    "PlanFeature",
    "SUPER_ADMIN_ROLE",
    "SubscriptionStatus",
    "SubscriptionType",
    "UNLIMITED",
]
