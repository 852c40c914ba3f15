from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import select

from models.billing import Organization, Subscription, SubscriptionPayment
from services.billing import subscription_store
from services.billing.errors import (
    DuplicateTransaction,
    GatewayCallFailed,
    PaymentMethodRequired,
    PlanRequired,
)
from services.billing.gateway import StripeApiError
from services.billing.orchestrator import SubscriptionOrchestrator, cycle_end
from services.billing.status_evaluator import ActiveStatus

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class StubGateway:
    def __init__(self, error: Optional[StripeApiError] = None) -> None:
        self.error = error
        self.swaps: List[Tuple[str, str, Optional[str]]] = []
        self.cancelled: List[str] = []

    async def swap_subscription_price(self, subscription_id: str, price_id: str, *, idempotency_key=None):
        if self.error is not None:
            raise self.error
        self.swaps.append((subscription_id, price_id, idempotency_key))
        return {"id": subscription_id, "status": "active"}

    async def cancel_subscription(self, subscription_id: str):
        if self.error is not None:
            raise self.error
        self.cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}


@pytest.fixture()
def plans(make_plan):
    basic = make_plan(
        name="Basic",
        gateway_price_id_monthly="price_basic_monthly",
        gateway_price_id_yearly="price_basic_yearly",
    )
    pro = make_plan(
        name="Professional",
        monthly_price="59.99",
        yearly_price="599.99",
        max_patients=500,
        gateway_price_id_monthly="price_pro_monthly",
        gateway_price_id_yearly="price_pro_yearly",
    )
    return basic, pro


def _orchestrator(gateway: StubGateway, cache) -> SubscriptionOrchestrator:
    return SubscriptionOrchestrator(gateway_factory=lambda: gateway, cache=cache)


def _fresh(session_factory, model, identifier):
    with session_factory() as session:
        row = session.get(model, identifier)
        session.expunge_all()
        return row


def test_cycle_end_clamps_month_length() -> None:
    assert cycle_end(datetime(2026, 1, 31, tzinfo=timezone.utc), "monthly") == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert cycle_end(datetime(2024, 2, 29, tzinfo=timezone.utc), "yearly") == datetime(2025, 2, 28, tzinfo=timezone.utc)


def test_change_plan_updates_gateway_then_local_record(
    make_org, make_subscription, plans, db_session, session_factory, status_cache
) -> None:
    basic, pro = plans
    org = make_org()
    subscription = make_subscription(
        org, plan=basic, payment_method="stripe", gateway_subscription_id="sub_123", gateway_customer_id="cus_1"
    )
    status_cache.set(org.id, ActiveStatus(status="active", plan_name="Basic"), BASE_TIME)
    gateway = StubGateway()

    result = asyncio.run(_orchestrator(gateway, status_cache).change_plan(db_session, org.id, pro.id, "yearly"))

    assert result.changed is True
    assert result.gateway_synced is True
    assert result.plan_name == "Professional"
    assert result.amount == Decimal("599.99")
    assert gateway.swaps[0][:2] == ("sub_123", "price_pro_yearly")
    stored = _fresh(session_factory, Subscription, subscription.id)
    assert stored.plan_id == pro.id
    assert stored.billing_cycle == "yearly"
    assert status_cache.get(org.id, BASE_TIME) is None


def test_gateway_timeout_leaves_plan_amount_and_cycle_unchanged(
    make_org, make_subscription, plans, db_session, session_factory, status_cache
) -> None:
    basic, pro = plans
    org = make_org()
    subscription = make_subscription(org, plan=basic, payment_method="stripe", gateway_subscription_id="sub_123")
    gateway = StubGateway(error=StripeApiError("Stripe swap_subscription_price timed out.", timed_out=True))

    with pytest.raises(GatewayCallFailed) as exc:
        asyncio.run(_orchestrator(gateway, status_cache).change_plan(db_session, org.id, pro.id, "yearly"))

    assert exc.value.status_code == 502
    assert exc.value.__cause__.timed_out is True
    assert exc.value.to_detail()["operation"] == "change_plan"
    stored = _fresh(session_factory, Subscription, subscription.id)
    assert stored.plan_id == basic.id
    assert stored.amount == Decimal("29.99")
    assert stored.billing_cycle == "monthly"


def test_same_plan_and_cycle_is_a_no_op(make_org, make_subscription, plans, db_session, status_cache) -> None:
    basic, _ = plans
    org = make_org()
    make_subscription(org, plan=basic, gateway_subscription_id="sub_123", payment_method="stripe")
    gateway = StubGateway()

    result = asyncio.run(_orchestrator(gateway, status_cache).change_plan(db_session, org.id, basic.id, "monthly"))

    assert result.changed is False
    assert gateway.swaps == []


def test_paid_plan_requires_payment_method(make_org, make_subscription, plans, db_session, status_cache) -> None:
    basic, pro = plans
    org = make_org()
    make_subscription(org, plan=basic, payment_method="manual")

    with pytest.raises(PaymentMethodRequired):
        asyncio.run(_orchestrator(StubGateway(), status_cache).change_plan(db_session, org.id, pro.id, "monthly"))


def test_stored_gateway_customer_counts_as_payment_method(make_org, make_subscription, plans, db_session, status_cache) -> None:
    basic, pro = plans
    org = make_org()
    make_subscription(org, plan=basic, payment_method="manual", gateway_customer_id="cus_9")

    result = asyncio.run(_orchestrator(StubGateway(), status_cache).change_plan(db_session, org.id, pro.id, "monthly"))

    assert result.changed is True
    assert result.plan_name == "Professional"


def test_manual_subscription_changes_locally(make_org, make_subscription, plans, db_session, session_factory, status_cache) -> None:
    basic, pro = plans
    org = make_org()
    subscription = make_subscription(org, plan=basic, payment_method="cash")
    gateway = StubGateway()

    result = asyncio.run(_orchestrator(gateway, status_cache).change_plan(db_session, org.id, pro.id, "monthly"))

    assert result.changed is True
    assert result.gateway_synced is False
    assert gateway.swaps == []
    assert _fresh(session_factory, Subscription, subscription.id).amount == Decimal("59.99")


def test_change_plan_runs_database_work_off_the_event_loop(
    make_org, make_subscription, plans, db_session, status_cache, monkeypatch
) -> None:
    basic, pro = plans
    org = make_org()
    make_subscription(org, plan=basic, payment_method="cash")
    threads = []
    original = subscription_store.require_subscription

    def _recording(*args, **kwargs):
        threads.append(threading.get_ident())
        return original(*args, **kwargs)

    monkeypatch.setattr(subscription_store, "require_subscription", _recording)

    async def _change() -> int:
        await _orchestrator(StubGateway(), status_cache).change_plan(db_session, org.id, pro.id, "monthly")
        return threading.get_ident()

    loop_thread = asyncio.run(_change())

    assert threads
    assert loop_thread not in threads


def test_manual_payment_extends_from_current_end(make_org, make_subscription, plans, db_session, status_cache) -> None:
    basic, _ = plans
    org = make_org()
    end = BASE_TIME + timedelta(days=30)
    subscription = make_subscription(org, plan=basic, end_date=end, payment_method="cash")

    payment = _orchestrator(StubGateway(), status_cache).record_manual_payment(
        db_session, org.id, payment_method="check", processed_by="admin-1", now=BASE_TIME + timedelta(days=1)
    )

    assert payment.transaction_id == "SUB-PMT-2026-000001"
    assert payment.amount == Decimal("29.99")
    assert payment.payment_method == "check"
    db_session.refresh(subscription)
    assert subscription.end_date.replace(tzinfo=timezone.utc) == datetime(2026, 5, 9, 12, 0, tzinfo=timezone.utc)
    assert subscription.status == "active"


def test_manual_payment_after_expiry_starts_from_now_and_reactivates(
    make_org, make_subscription, plans, db_session, status_cache
) -> None:
    basic, _ = plans
    org = make_org(is_active=False, deactivation_source="billing")
    subscription = make_subscription(org, plan=basic, status="inactive", end_date=BASE_TIME)
    now = BASE_TIME + timedelta(days=20)

    _orchestrator(StubGateway(), status_cache).record_manual_payment(
        db_session, org.id, billing_cycle="yearly", amount=Decimal("299.99"), now=now
    )

    db_session.refresh(subscription)
    db_session.refresh(org)
    assert subscription.end_date.replace(tzinfo=timezone.utc) == now.replace(year=2027)
    assert subscription.billing_cycle == "yearly"
    assert org.is_active is True


def test_manual_payment_rules(make_org, make_subscription, plans, db_session, status_cache) -> None:
    basic, _ = plans
    orchestrator = _orchestrator(StubGateway(), status_cache)

    trial_org = make_org(name="Trial")
    make_subscription(trial_org, plan=None, status="trialing")
    with pytest.raises(PlanRequired):
        orchestrator.record_manual_payment(db_session, trial_org.id, now=BASE_TIME)
    db_session.rollback()

    org = make_org(name="Paying")
    make_subscription(org, plan=basic)
    orchestrator.record_manual_payment(db_session, org.id, transaction_id="RCPT-1", now=BASE_TIME)
    with pytest.raises(DuplicateTransaction):
        orchestrator.record_manual_payment(db_session, org.id, transaction_id="RCPT-1", now=BASE_TIME)
    db_session.rollback()

    payments = db_session.scalars(select(SubscriptionPayment.transaction_id)).all()
    assert payments == ["RCPT-1"]
    assert db_session.get(Organization, org.id).is_active is True
