from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from models.billing import BillingWebhookEventLog, Organization, Subscription, SubscriptionPayment
from services.billing import webhook_store
from services.billing.errors import ConcurrentUpdate
from services.billing.reconciler import UNRESOLVED_PLAN_MESSAGE, ReconcileOutcome, WebhookReconciler
from services.billing.status_evaluator import ActiveStatus
from services.billing.webhook_events import InvoicePaid, parse_gateway_event

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
APRIL_10 = datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
MAY_10 = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _subscription_event(event_id: str, created: datetime, period_end: datetime, status: str = "active", **obj):
    return parse_gateway_event(
        {
            "id": event_id,
            "type": "customer.subscription.updated",
            "created": _ts(created),
            "data": {
                "object": {
                    "id": obj.pop("subscription_id", "sub_123"),
                    "status": status,
                    "current_period_end": _ts(period_end),
                    **obj,
                }
            },
        }
    )


def _invoice_event(
    event_id: str,
    created: datetime,
    period_end: datetime,
    *,
    amount: int = 2999,
    invoice_id: str = "in_1",
    subscription_id: str = "sub_123",
    price: Optional[str] = None,
):
    line = {"period": {"start": _ts(created), "end": _ts(period_end)}}
    if price is not None:
        line["price"] = {"id": price}
    return parse_gateway_event(
        {
            "id": event_id,
            "type": "invoice.payment_succeeded",
            "created": _ts(created),
            "data": {
                "object": {
                    "id": invoice_id,
                    "subscription": subscription_id,
                    "amount_paid": amount,
                    "currency": "usd",
                    "lines": {"data": [line]},
                }
            },
        }
    )


def _simple_event(event_id: str, event_type: str, created: datetime, obj: dict):
    return parse_gateway_event({"id": event_id, "type": event_type, "created": _ts(created), "data": {"object": obj}})


@pytest.fixture()
def reconciler(session_factory, status_cache) -> WebhookReconciler:
    return WebhookReconciler(session_factory=session_factory, cache=status_cache)


@pytest.fixture()
def gateway_subscription(make_org, make_plan, make_subscription):
    org = make_org()
    return make_subscription(
        org,
        plan=make_plan(),
        payment_method="stripe",
        gateway_subscription_id="sub_123",
        end_date=APRIL_10,
        next_payment_date=APRIL_10,
    )


def _reload(session_factory, subscription_id):
    with session_factory() as session:
        subscription = session.get(Subscription, subscription_id)
        organization = session.get(Organization, subscription.organization_id)
        session.expunge_all()
        return subscription, organization


def test_stale_update_after_payment_keeps_later_period(reconciler, session_factory, gateway_subscription) -> None:
    paid = reconciler.process(_invoice_event("evt_paid", BASE_TIME + timedelta(hours=2), MAY_10), now=BASE_TIME)
    stale = reconciler.process(
        _subscription_event("evt_old", BASE_TIME + timedelta(hours=1), APRIL_10), now=BASE_TIME
    )

    assert paid.outcome is ReconcileOutcome.APPLIED
    assert stale.outcome is ReconcileOutcome.STALE
    assert stale.acknowledged is True
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.next_payment_date.replace(tzinfo=timezone.utc) == MAY_10
    assert subscription.end_date.replace(tzinfo=timezone.utc) == MAY_10
    assert subscription.status == "active"


def test_event_created_before_last_applied_is_stale(reconciler, session_factory, gateway_subscription) -> None:
    reconciler.process(_subscription_event("evt_new", BASE_TIME + timedelta(hours=5), MAY_10, status="past_due"))
    older = reconciler.process(_subscription_event("evt_older", BASE_TIME + timedelta(hours=4), MAY_10))

    assert older.outcome is ReconcileOutcome.STALE
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "past_due"


def test_duplicate_delivery_is_applied_once(reconciler, session_factory, gateway_subscription) -> None:
    event = _invoice_event("evt_dup", BASE_TIME + timedelta(hours=1), MAY_10)

    first = reconciler.process(event)
    second = reconciler.process(event)

    assert first.outcome is ReconcileOutcome.APPLIED
    assert second.outcome is ReconcileOutcome.DUPLICATE
    with session_factory() as session:
        payments = session.scalars(select(SubscriptionPayment)).all()
    assert len(payments) == 1
    assert payments[0].gateway_invoice_id == "in_1"
    assert payments[0].payment_method == "stripe"
    assert payments[0].transaction_id.startswith("SUB-PMT-2026-")


def test_redelivered_invoice_with_new_event_id_does_not_duplicate_payment(
    reconciler, session_factory, gateway_subscription
) -> None:
    reconciler.process(_invoice_event("evt_a", BASE_TIME + timedelta(hours=1), MAY_10))
    reconciler.process(_invoice_event("evt_b", BASE_TIME + timedelta(hours=2), MAY_10))

    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(SubscriptionPayment)) == 1


def test_unmatched_event_is_acknowledged_and_audited(reconciler, session_factory, gateway_subscription) -> None:
    event = _subscription_event("evt_ghost", BASE_TIME, MAY_10, subscription_id="sub_unknown")

    result = reconciler.process(event, payload={"id": "evt_ghost"})

    assert result.outcome is ReconcileOutcome.UNMATCHED
    assert result.acknowledged is True
    assert webhook_store.has_processed_event("evt_ghost") is True
    with session_factory() as session:
        row = session.scalars(select(BillingWebhookEventLog)).one()
    assert row.result == "unmatched"
    assert row.gateway_subscription_id == "sub_unknown"
    assert row.payload == {"id": "evt_ghost"}


def test_deleted_subscription_deactivates_until_payment(reconciler, session_factory, gateway_subscription) -> None:
    deleted = reconciler.process(
        _simple_event("evt_del", "customer.subscription.deleted", BASE_TIME + timedelta(hours=1), {"id": "sub_123"})
    )
    subscription, organization = _reload(session_factory, gateway_subscription.id)
    assert deleted.outcome is ReconcileOutcome.APPLIED
    assert subscription.status == "cancelled"
    assert subscription.auto_renew is False
    assert organization.is_active is False
    assert organization.deactivation_source == "billing"

    reconciler.process(_invoice_event("evt_pay", BASE_TIME + timedelta(hours=2), MAY_10))
    subscription, organization = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "active"
    assert organization.is_active is True
    assert organization.deactivation_source is None


def test_payment_does_not_undo_admin_deactivation(reconciler, session_factory, db_session, gateway_subscription) -> None:
    organization = db_session.get(Organization, gateway_subscription.organization_id)
    organization.is_active = False
    organization.deactivation_source = "admin"
    db_session.commit()

    reconciler.process(_invoice_event("evt_pay", BASE_TIME + timedelta(hours=1), MAY_10))

    _, organization = _reload(session_factory, gateway_subscription.id)
    assert organization.is_active is False
    assert organization.deactivation_source == "admin"


def test_failed_invoice_marks_past_due(reconciler, session_factory, gateway_subscription) -> None:
    event = _simple_event(
        "evt_fail", "invoice.payment_failed", BASE_TIME + timedelta(hours=1), {"id": "in_9", "subscription": "sub_123"}
    )

    assert reconciler.process(event).outcome is ReconcileOutcome.APPLIED
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "past_due"


def test_zero_amount_trial_invoice_keeps_trialing(reconciler, session_factory, db_session, gateway_subscription) -> None:
    gateway_subscription.status = "trialing"
    db_session.commit()

    reconciler.process(_invoice_event("evt_trial", BASE_TIME + timedelta(hours=1), MAY_10, amount=0))

    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "trialing"
    assert subscription.next_payment_date.replace(tzinfo=timezone.utc) == MAY_10


def test_cancel_at_period_end_flags_are_mirrored(reconciler, session_factory, gateway_subscription) -> None:
    reconciler.process(
        _subscription_event(
            "evt_cancel",
            BASE_TIME + timedelta(hours=1),
            APRIL_10,
            cancel_at_period_end=True,
            canceled_at=_ts(BASE_TIME + timedelta(hours=1)),
            customer="cus_42",
        )
    )

    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.cancel_at_period_end is True
    assert subscription.auto_renew is False
    assert subscription.cancelled_at is not None
    assert subscription.gateway_customer_id == "cus_42"
    assert subscription.status == "active"


def test_trial_will_end_does_not_advance_event_guard(reconciler, session_factory, gateway_subscription) -> None:
    event = _simple_event(
        "evt_trial_end",
        "customer.subscription.trial_will_end",
        BASE_TIME + timedelta(days=1),
        {"id": "sub_123", "trial_end": _ts(BASE_TIME + timedelta(days=4))},
    )

    assert reconciler.process(event).outcome is ReconcileOutcome.APPLIED
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.last_gateway_event_at is None


def test_database_failure_is_isolated_and_retryable(reconciler, session_factory, gateway_subscription) -> None:
    def _locked(session, subscription, event):
        subscription.status = "unpaid"
        raise OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))

    original = reconciler._handlers[InvoicePaid]
    reconciler._handlers[InvoicePaid] = _locked
    event = _invoice_event("evt_locked", BASE_TIME + timedelta(hours=1), MAY_10)

    result = reconciler.process(event)

    assert result.outcome is ReconcileOutcome.FAILED
    assert result.acknowledged is False
    assert "database is locked" in result.message
    assert webhook_store.has_processed_event("evt_locked") is False
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "active"

    reconciler._handlers[InvoicePaid] = original
    assert reconciler.process(event).outcome is ReconcileOutcome.APPLIED


def test_concurrent_update_is_retryable(reconciler, gateway_subscription) -> None:
    def _conflict(session, subscription, event):
        raise ConcurrentUpdate()

    reconciler._handlers[InvoicePaid] = _conflict

    result = reconciler.process(_invoice_event("evt_conflict", BASE_TIME + timedelta(hours=1), MAY_10))

    assert result.outcome is ReconcileOutcome.FAILED
    assert webhook_store.has_processed_event("evt_conflict") is False


def test_handler_bug_is_rejected_and_acknowledged(reconciler, session_factory, gateway_subscription) -> None:
    def _boom(session, subscription, event):
        subscription.status = "unpaid"
        raise RuntimeError("unexpected invoice shape")

    reconciler._handlers[InvoicePaid] = _boom

    result = reconciler.process(_invoice_event("evt_boom", BASE_TIME + timedelta(hours=1), MAY_10))

    assert result.outcome is ReconcileOutcome.REJECTED
    assert result.acknowledged is True
    assert webhook_store.has_processed_event("evt_boom") is True
    subscription, _ = _reload(session_factory, gateway_subscription.id)
    assert subscription.status == "active"
    with session_factory() as session:
        row = session.scalars(select(BillingWebhookEventLog)).one()
    assert row.result == "rejected"
    assert "unexpected invoice shape" in row.message


def test_invalid_payload_is_audited(reconciler, session_factory) -> None:
    result = reconciler.record_invalid_payload({"id": "evt_bad", "type": "customer.subscription.updated"}, "bad status")

    assert result.outcome is ReconcileOutcome.PAYLOAD_INVALID
    assert result.acknowledged is True
    with session_factory() as session:
        row = session.scalars(select(BillingWebhookEventLog)).one()
    assert row.result == "payload_invalid"
    assert row.event_id == "evt_bad"
    assert row.message == "bad status"


@pytest.fixture()
def planless_trial(make_org, make_subscription):
    return make_subscription(
        make_org(name="Trial Clinic"),
        plan=None,
        status="trialing",
        gateway_subscription_id="sub_pl",
        end_date=APRIL_10,
        trial_end_date=APRIL_10,
    )


def test_paid_invoice_without_known_price_keeps_planless_trial(reconciler, session_factory, planless_trial) -> None:
    result = reconciler.process(
        _invoice_event("evt_pl", BASE_TIME + timedelta(hours=1), MAY_10, subscription_id="sub_pl", invoice_id="in_pl")
    )

    assert result.outcome is ReconcileOutcome.APPLIED
    assert result.message == UNRESOLVED_PLAN_MESSAGE
    subscription, _ = _reload(session_factory, planless_trial.id)
    assert subscription.status == "trialing"
    assert subscription.plan_id is None
    assert subscription.end_date.replace(tzinfo=timezone.utc) == APRIL_10
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(SubscriptionPayment)) == 1
        row = session.scalars(select(BillingWebhookEventLog)).one()
    assert row.message == UNRESOLVED_PLAN_MESSAGE


def test_paid_invoice_attaches_plan_from_gateway_price(reconciler, session_factory, make_plan, planless_trial) -> None:
    plan = make_plan(name="Professional", monthly_price="59.99", yearly_price="599.99", gateway_price_id_yearly="price_pro_y")

    reconciler.process(
        _invoice_event(
            "evt_pl_price",
            BASE_TIME + timedelta(hours=1),
            MAY_10,
            subscription_id="sub_pl",
            invoice_id="in_pl_price",
            price="price_pro_y",
        )
    )

    subscription, _ = _reload(session_factory, planless_trial.id)
    assert subscription.status == "active"
    assert subscription.plan_id == plan.id
    assert subscription.billing_cycle == "yearly"
    assert str(subscription.amount) == "599.99"
    assert subscription.end_date.replace(tzinfo=timezone.utc) == MAY_10


def test_active_sync_without_known_price_keeps_planless_trial(reconciler, session_factory, planless_trial) -> None:
    event = _subscription_event(
        "evt_pl_sync",
        BASE_TIME + timedelta(hours=1),
        MAY_10,
        subscription_id="sub_pl",
        customer="cus_pl",
        items={"data": [{"price": {"id": "price_unknown"}}]},
    )

    result = reconciler.process(event)

    assert result.message == UNRESOLVED_PLAN_MESSAGE
    subscription, _ = _reload(session_factory, planless_trial.id)
    assert subscription.status == "trialing"
    assert subscription.gateway_customer_id == "cus_pl"


def test_applied_event_invalidates_cached_status(reconciler, status_cache, gateway_subscription) -> None:
    org_id = gateway_subscription.organization_id
    status_cache.set(org_id, ActiveStatus(status="active", plan_name="Basic"), BASE_TIME)
    assert status_cache.get(org_id, BASE_TIME) is not None

    reconciler.process(_invoice_event("evt_cache", BASE_TIME + timedelta(hours=1), MAY_10))

    assert status_cache.get(org_id, BASE_TIME) is None


def test_ignored_event_types_are_acknowledged(reconciler) -> None:
    result = reconciler.process(_simple_event("evt_charge", "charge.refunded", BASE_TIME, {"id": "ch_1"}))
    assert result.outcome is ReconcileOutcome.IGNORED
    assert webhook_store.has_processed_event("evt_charge") is True
