from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from models.billing import Subscription
from services.billing.errors import SubscriptionInactive
from services.billing.status_cache import MemoryStatusCache
from services.billing.status_evaluator import InactiveReason
from services.billing.status_service import SubscriptionStatusService
from services.billing.sweeper import build_subscription_report, sweep_expired_subscriptions

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _status_of(db_session, subscription_id) -> str:
    db_session.expire_all()
    return db_session.scalar(select(Subscription.status).where(Subscription.id == subscription_id))


def test_trial_window_follows_organization_age(db_session, make_org, status_cache) -> None:
    org = make_org(created_at=BASE_TIME)
    service = SubscriptionStatusService(cache=status_cache, trial_days=14)

    early = service.check(db_session, org.id, now=BASE_TIME + timedelta(days=10), use_cache=False)
    late = service.check(db_session, org.id, now=BASE_TIME + timedelta(days=15), use_cache=False)

    assert early.is_active and early.days_remaining == 4
    assert late.is_active is False
    assert late.reason is InactiveReason.NO_SUBSCRIPTION


def test_expired_subscription_is_persisted_once(db_session, make_org, make_plan, make_subscription, status_cache) -> None:
    org = make_org()
    plan = make_plan()
    end = BASE_TIME + timedelta(days=30)
    subscription = make_subscription(org, plan=plan, end_date=end)
    service = SubscriptionStatusService(cache=status_cache)

    first = service.check(db_session, org.id, now=end + timedelta(hours=1), use_cache=False)
    assert first.reason is InactiveReason.SUBSCRIPTION_EXPIRED
    assert _status_of(db_session, subscription.id) == "inactive"

    second = service.check(db_session, org.id, now=end + timedelta(hours=2), use_cache=False)
    assert second.is_active is False
    assert second.reason is InactiveReason.INACTIVE
    assert _status_of(db_session, subscription.id) == "inactive"


def test_apply_expiry_skips_subscription_extended_meanwhile(
    db_session, make_org, make_plan, make_subscription, status_cache
) -> None:
    org = make_org()
    end = BASE_TIME + timedelta(days=30)
    subscription = make_subscription(org, plan=make_plan(), end_date=end)
    service = SubscriptionStatusService(cache=status_cache)
    evaluation = service.evaluate(db_session, org.id, now=end + timedelta(minutes=5))
    assert evaluation.command is not None

    subscription.end_date = end + timedelta(days=30)
    db_session.commit()

    assert service.apply_expiry(db_session, evaluation.command) is False
    assert _status_of(db_session, subscription.id) == "active"


def test_cached_outcome_is_served_until_invalidated(
    db_session, make_org, make_plan, make_subscription
) -> None:
    org = make_org()
    subscription = make_subscription(org, plan=make_plan(), end_date=BASE_TIME + timedelta(days=30))
    cache = MemoryStatusCache(ttl_seconds=60)
    service = SubscriptionStatusService(cache=cache)
    now = BASE_TIME + timedelta(days=1)

    assert service.check(db_session, org.id, now=now).is_active

    subscription.status = "past_due"
    db_session.commit()
    assert service.check(db_session, org.id, now=now + timedelta(seconds=30)).is_active

    service.invalidate(org.id)
    refreshed = service.check(db_session, org.id, now=now + timedelta(seconds=31))
    assert refreshed.reason is InactiveReason.PAST_DUE


def test_cache_entry_expires_after_ttl(db_session, make_org, make_plan, make_subscription) -> None:
    org = make_org()
    subscription = make_subscription(org, plan=make_plan(), end_date=BASE_TIME + timedelta(days=30))
    service = SubscriptionStatusService(cache=MemoryStatusCache(ttl_seconds=60))
    now = BASE_TIME + timedelta(days=1)
    service.check(db_session, org.id, now=now)

    subscription.status = "unpaid"
    db_session.commit()

    assert service.check(db_session, org.id, now=now + timedelta(seconds=61)).reason is InactiveReason.UNPAID


def test_require_active_raises_with_redirect(db_session, make_org, status_cache) -> None:
    org = make_org(is_active=False, deactivation_source="admin")
    service = SubscriptionStatusService(cache=status_cache)

    with pytest.raises(SubscriptionInactive) as exc:
        service.require_active(db_session, org.id, now=BASE_TIME + timedelta(days=1))

    detail = exc.value.to_detail()
    assert detail["reason"] == "organization_deactivated"
    assert detail["redirectTo"] == "/subscription/organization-deactivated"


def test_sweep_marks_overdue_subscriptions_inactive(
    db_session, make_org, make_plan, make_subscription, status_cache
) -> None:
    plan = make_plan()
    overdue = make_subscription(make_org(name="Overdue"), plan=plan, end_date=BASE_TIME + timedelta(days=5))
    current = make_subscription(make_org(name="Current"), plan=plan, end_date=BASE_TIME + timedelta(days=60))
    service = SubscriptionStatusService(cache=status_cache)
    now = BASE_TIME + timedelta(days=10)

    preview = sweep_expired_subscriptions(db_session, now=now, status=service, dry_run=True)
    assert [command.subscription_id for command in preview] == [overdue.id]
    assert _status_of(db_session, overdue.id) == "active"

    applied = sweep_expired_subscriptions(db_session, now=now, status=service)
    assert [command.subscription_id for command in applied] == [overdue.id]
    assert _status_of(db_session, overdue.id) == "inactive"
    assert _status_of(db_session, current.id) == "active"


def test_subscription_report_groups_by_status(db_session, make_org, make_plan, make_subscription) -> None:
    plan = make_plan()
    make_subscription(make_org(name="Soon"), plan=plan, end_date=BASE_TIME + timedelta(days=3))
    make_subscription(make_org(name="Late"), plan=plan, end_date=BASE_TIME - timedelta(days=1))
    make_org(name="Fresh")

    report = build_subscription_report(db_session, now=BASE_TIME, warning_days=7)

    assert report.total_organizations == 3
    assert report.organizations_without_subscription == 1
    assert report.by_status == {"active": 2}
    assert len(report.expiring_soon) == 1
    assert len(report.overdue) == 1
