from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.billing_constants import SubscriptionStatus
from services.billing.webhook_events import (
    IgnoredEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionSynced,
    WebhookPayloadError,
    map_gateway_status,
    parse_gateway_event,
)

CREATED = 1_773_144_000  # 2026-03-10T12:00:00Z


def _event(event_type: str, obj: dict, **extra) -> dict:
    return {"id": "evt_1", "type": event_type, "created": CREATED, "data": {"object": obj}, **extra}


def test_subscription_updated_is_typed() -> None:
    event = parse_gateway_event(
        _event(
            "customer.subscription.updated",
            {
                "id": "sub_123",
                "status": "past_due",
                "current_period_end": 1_775_822_400,
                "cancel_at_period_end": True,
                "customer": {"id": "cus_9"},
            },
        )
    )

    assert isinstance(event, SubscriptionSynced)
    assert event.gateway_subscription_id == "sub_123"
    assert event.status is SubscriptionStatus.PAST_DUE
    assert event.current_period_end == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
    assert event.cancel_at_period_end is True
    assert event.customer_id == "cus_9"
    assert event.envelope.created == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_period_end_falls_back_to_subscription_items() -> None:
    event = parse_gateway_event(
        _event(
            "customer.subscription.created",
            {"id": "sub_1", "status": "active", "items": {"data": [{"current_period_end": 1_775_822_400}]}},
        )
    )
    assert event.current_period_end == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)


def test_invoice_paid_converts_minor_units_and_line_period() -> None:
    event = parse_gateway_event(
        _event(
            "invoice.payment_succeeded",
            {
                "id": "in_1",
                "subscription": "sub_123",
                "amount_paid": 2999,
                "currency": "usd",
                "period_end": CREATED,
                "lines": {"data": [{"period": {"start": CREATED, "end": 1_775_822_400}}]},
                "status_transitions": {"paid_at": CREATED + 60},
            },
        )
    )

    assert isinstance(event, InvoicePaid)
    assert event.amount_paid == Decimal("29.99")
    assert event.currency == "USD"
    assert event.period_end == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
    assert event.paid_at == datetime(2026, 3, 10, 12, 1, tzinfo=timezone.utc)


def test_invoice_subscription_id_from_parent_details() -> None:
    event = parse_gateway_event(
        _event(
            "invoice.payment_failed",
            {
                "id": "in_2",
                "attempt_count": 2,
                "parent": {"subscription_details": {"subscription": "sub_456"}},
            },
        )
    )
    assert isinstance(event, InvoicePaymentFailed)
    assert event.gateway_subscription_id == "sub_456"
    assert event.attempt_count == 2


def test_price_id_from_subscription_items_and_invoice_lines() -> None:
    synced = parse_gateway_event(
        _event(
            "customer.subscription.updated",
            {"id": "sub_1", "status": "active", "items": {"data": [{"price": {"id": "price_pro_monthly"}}]}},
        )
    )
    assert synced.price_id == "price_pro_monthly"

    invoice = parse_gateway_event(
        _event(
            "invoice.paid",
            {
                "id": "in_1",
                "subscription": "sub_1",
                "amount_paid": 5999,
                "currency": "usd",
                "lines": {"data": [{"pricing": {"price_details": {"price": "price_pro_yearly"}}}]},
            },
        )
    )
    assert invoice.price_id == "price_pro_yearly"


def test_zero_decimal_currency_amount() -> None:
    event = parse_gateway_event(
        _event("invoice.paid", {"id": "in_3", "subscription": "sub_1", "amount_paid": 5000, "currency": "jpy"})
    )
    assert event.amount_paid == Decimal("5000")


def test_deleted_and_unknown_types() -> None:
    deleted = parse_gateway_event(_event("customer.subscription.deleted", {"id": "sub_1", "ended_at": CREATED}))
    ignored = parse_gateway_event(_event("charge.refunded", {"id": "ch_1"}))

    assert isinstance(deleted, SubscriptionDeleted)
    assert deleted.ended_at == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert isinstance(ignored, IgnoredEvent)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "invoice.paid", "created": CREATED, "data": {"object": {"id": "in_1"}}},
        {"id": "evt_1", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}},
        {"id": "evt_1", "type": "invoice.paid", "created": CREATED, "data": {}},
        {"id": "evt_1", "type": "customer.subscription.updated", "created": CREATED, "data": {"object": {"id": "s", "status": "weird"}}},
    ],
)
def test_malformed_payloads_are_rejected(payload: dict) -> None:
    with pytest.raises(WebhookPayloadError):
        parse_gateway_event(payload)


def test_gateway_status_mapping() -> None:
    assert map_gateway_status("canceled") is SubscriptionStatus.CANCELLED
    assert map_gateway_status("incomplete_expired") is SubscriptionStatus.UNPAID
    assert map_gateway_status("paused") is SubscriptionStatus.INACTIVE
    assert map_gateway_status("TRIALING") is SubscriptionStatus.TRIALING
