"""Feature gating against the resolved plan."""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from core.billing_constants import ALL_FEATURES, SUPER_ADMIN_ROLE, PlanFeature
from services.billing.errors import FeatureUnavailable
from services.billing.plan_catalog import PlanSnapshot

FEATURE_LABELS: Dict[str, str] = {
    PlanFeature.CUSTOM_BRANDING.value: "Custom branding",
    PlanFeature.API_ACCESS.value: "API access",
    PlanFeature.PRIORITY_SUPPORT.value: "Priority support",
    PlanFeature.ADVANCED_REPORTS.value: "Advanced reports",
    PlanFeature.SMS_NOTIFICATIONS.value: "SMS notifications",
    PlanFeature.EMAIL_NOTIFICATIONS.value: "Email notifications",
    PlanFeature.DATA_BACKUP.value: "Data backup",
}

_EVERYTHING: FrozenSet[str] = frozenset(feature.value for feature in ALL_FEATURES)


def feature_label(feature: str) -> str:
    return FEATURE_LABELS.get(feature, feature)


def is_known_feature(feature: str) -> bool:
    return feature in _EVERYTHING


def capabilities_for(plan: PlanSnapshot, *, role: Optional[str] = None) -> FrozenSet[str]:
    if role == SUPER_ADMIN_ROLE:
        return _EVERYTHING
    return frozenset(plan.features)


def has_feature(plan: PlanSnapshot, feature: str, *, role: Optional[str] = None) -> bool:
    return feature in capabilities_for(plan, role=role)


def ensure_feature(plan: PlanSnapshot, feature: str, *, role: Optional[str] = None) -> PlanSnapshot:
    """Return ``plan`` when it carries ``feature``; raise :class:`FeatureUnavailable` otherwise."""

    if has_feature(plan, feature, role=role):
        return plan
    raise FeatureUnavailable(feature, plan.name, label=feature_label(feature))


__all__ = [
    "FEATURE_LABELS",
    "capabilities_for",
    "ensure_feature",
    "feature_label",
    "has_feature",
    "is_known_feature",
]
