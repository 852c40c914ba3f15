"""Typed gateway events.

Raw webhook JSON is converted here, once, into a closed set of event types.
Everything downstream of :func:`parse_gateway_event` works with these types
only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from core.billing_constants import SubscriptionStatus
from core.time_utils import from_timestamp

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.payment_succeeded"
INVOICE_PAID_ALIAS = "invoice.paid"
INVOICE_FAILED = "invoice.payment_failed"
TRIAL_WILL_END = "customer.subscription.trial_will_end"

_GATEWAY_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.INACTIVE,
}

# Currencies Stripe bills without a minor unit.
_ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"})


class WebhookPayloadError(ValueError):
    """The payload is not a well-formed gateway event."""


def map_gateway_status(raw: Optional[str]) -> SubscriptionStatus:
    status = _GATEWAY_STATUS_MAP.get((raw or "").strip().lower())
    if status is None:
        raise WebhookPayloadError(f"Unknown gateway subscription status: {raw!r}")
    return status


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    event_type: str
    created: datetime
    livemode: bool = False


@dataclass(frozen=True)
class SubscriptionSynced:
    envelope: EventEnvelope
    gateway_subscription_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    envelope: EventEnvelope
    gateway_subscription_id: str
    ended_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvoicePaid:
    envelope: EventEnvelope
    gateway_subscription_id: Optional[str]
    invoice_id: str
    amount_paid: Decimal
    currency: str
    period_end: Optional[datetime]
    paid_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    envelope: EventEnvelope
    gateway_subscription_id: Optional[str]
    invoice_id: str
    attempt_count: int = 0


@dataclass(frozen=True)
class TrialWillEnd:
    envelope: EventEnvelope
    gateway_subscription_id: str
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class IgnoredEvent:
    envelope: EventEnvelope


GatewayEvent = Union[
    SubscriptionSynced,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    TrialWillEnd,
    IgnoredEvent,
]


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise WebhookPayloadError(f"Event field '{key}' is missing.")
    return value.strip()


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, Mapping):
        return _optional_str(value.get("id"))
    return None


def _minor_to_amount(value: Any, currency: str) -> Decimal:
    amount = Decimal(int(value or 0))
    if currency.lower() in _ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / Decimal(100)


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    direct = _optional_str(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {} if isinstance(parent, Mapping) else {}
    return _optional_str(details.get("subscription")) if isinstance(details, Mapping) else None


def _first_price_id(items: Any) -> Optional[str]:
    for item in items or []:
        if not isinstance(item, Mapping):
            continue
        price = _optional_str(item.get("price"))
        if price:
            return price
        pricing = item.get("pricing") or {}
        details = pricing.get("price_details") or {} if isinstance(pricing, Mapping) else {}
        price = _optional_str(details.get("price")) if isinstance(details, Mapping) else None
        if price:
            return price
    return None


def _invoice_period_end(invoice: Mapping[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") if isinstance(line, Mapping) else None
        if isinstance(period, Mapping) and period.get("end"):
            return from_timestamp(period["end"])
    return from_timestamp(invoice.get("period_end"))


def _subscription_period_end(subscription: Mapping[str, Any]) -> Optional[datetime]:
    if subscription.get("current_period_end"):
        return from_timestamp(subscription["current_period_end"])
    items = (subscription.get("items") or {}).get("data") or []
    ends = [item.get("current_period_end") for item in items if isinstance(item, Mapping) and item.get("current_period_end")]
    return from_timestamp(max(ends)) if ends else None


def parse_gateway_event(payload: Mapping[str, Any]) -> GatewayEvent:
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError("Event payload must be a JSON object.")
    event_id = _require_str(payload, "id")
    event_type = _require_str(payload, "type")
    created = from_timestamp(payload.get("created"))
    if created is None:
        raise WebhookPayloadError("Event field 'created' is missing.")
    envelope = EventEnvelope(event_id=event_id, event_type=event_type, created=created, livemode=bool(payload.get("livemode")))

    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise WebhookPayloadError("Event field 'data.object' is missing.")

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionSynced(
            envelope=envelope,
            gateway_subscription_id=_require_str(obj, "id"),
            status=map_gateway_status(obj.get("status")),
            current_period_end=_subscription_period_end(obj),
            trial_end=from_timestamp(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_timestamp(obj.get("canceled_at")),
            customer_id=_optional_str(obj.get("customer")),
            price_id=_first_price_id((obj.get("items") or {}).get("data")),
        )
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            envelope=envelope,
            gateway_subscription_id=_require_str(obj, "id"),
            ended_at=from_timestamp(obj.get("ended_at")) or from_timestamp(obj.get("canceled_at")),
        )
    if event_type in (INVOICE_PAID, INVOICE_PAID_ALIAS):
        currency = str(obj.get("currency") or "usd")
        transitions = obj.get("status_transitions") or {}
        return InvoicePaid(
            envelope=envelope,
            gateway_subscription_id=_invoice_subscription_id(obj),
            invoice_id=_require_str(obj, "id"),
            amount_paid=_minor_to_amount(obj.get("amount_paid"), currency),
            currency=currency.upper(),
            period_end=_invoice_period_end(obj),
            paid_at=from_timestamp(transitions.get("paid_at")) if isinstance(transitions, Mapping) else None,
            customer_id=_optional_str(obj.get("customer")),
            price_id=_first_price_id((obj.get("lines") or {}).get("data")),
        )
    if event_type == INVOICE_FAILED:
        return InvoicePaymentFailed(
            envelope=envelope,
            gateway_subscription_id=_invoice_subscription_id(obj),
            invoice_id=_require_str(obj, "id"),
            attempt_count=int(obj.get("attempt_count") or 0),
        )
    if event_type == TRIAL_WILL_END:
        return TrialWillEnd(
            envelope=envelope,
            gateway_subscription_id=_require_str(obj, "id"),
            trial_end=from_timestamp(obj.get("trial_end")),
        )
    return IgnoredEvent(envelope=envelope)


def gateway_subscription_id_of(event: GatewayEvent) -> Optional[str]:
    return getattr(event, "gateway_subscription_id", None)


__all__ = [
    "EventEnvelope",
    "GatewayEvent",
    "IgnoredEvent",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "SubscriptionDeleted",
    "SubscriptionSynced",
    "TrialWillEnd",
    "WebhookPayloadError",
    "gateway_subscription_id_of",
    "map_gateway_status",
    "parse_gateway_event",
]
