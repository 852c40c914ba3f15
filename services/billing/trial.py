"""Implicit trial window for organizations that never created a subscription."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from core.billing_constants import DEFAULT_TRIAL_DAYS
from core.env import env_int
from core.time_utils import days_until, ensure_utc


def configured_trial_days() -> int:
    return env_int("BILLING_DEFAULT_TRIAL_DAYS", DEFAULT_TRIAL_DAYS, minimum=0)


@dataclass(frozen=True)
class TrialWindow:
    starts_at: datetime
    ends_at: datetime

    def is_open(self, now: datetime) -> bool:
        return ensure_utc(now) < self.ends_at

    def days_remaining(self, now: datetime) -> int:
        return days_until(self.ends_at, now)


def resolve_trial_window(created_at: datetime, *, trial_days: int | None = None) -> TrialWindow:
    """Derive the trial window from the organization's creation time. Pure; no persistence."""

    days = configured_trial_days() if trial_days is None else trial_days
    start = ensure_utc(created_at)
    return TrialWindow(starts_at=start, ends_at=start + timedelta(days=days))


__all__ = ["TrialWindow", "configured_trial_days", "resolve_trial_window"]
