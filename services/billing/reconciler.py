"""Apply typed gateway events to local subscription records."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import database
from core.billing_constants import (
    DeactivationSource,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
)
from core.time_utils import ensure_utc, utcnow
from models.billing import Subscription, SubscriptionPayment
from services.billing import plan_catalog, subscription_store, webhook_store
from services.billing.errors import ConcurrentUpdate, WebhookUnmatched
from services.billing.metrics import WEBHOOK_EVENTS
from services.billing.status_cache import StatusCache, status_cache as default_status_cache
from services.billing.webhook_audit import record_webhook_audit
from services.billing.webhook_events import (
    GatewayEvent,
    IgnoredEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionSynced,
    TrialWillEnd,
    gateway_subscription_id_of,
)

logger = logging.getLogger(__name__)

WEBHOOK_PROCESSOR = "stripe-webhook"
UNRESOLVED_PLAN_MESSAGE = "no plan matches the gateway price; subscription left unchanged"

_RETRYABLE_ERRORS = (SQLAlchemyError, ConcurrentUpdate)
_PAID_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value})


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    PAYLOAD_INVALID = "payload_invalid"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    event_id: str
    event_type: str
    organization_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None
    message: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome is not ReconcileOutcome.FAILED


def _event_period_end(event: GatewayEvent) -> Optional[datetime]:
    if isinstance(event, SubscriptionSynced):
        return event.current_period_end
    if isinstance(event, InvoicePaid):
        return event.period_end
    return None


def is_stale_event(subscription: Subscription, event: GatewayEvent) -> bool:
    """An event is stale when it describes an older period or predates the newest applied event."""

    period_end = _event_period_end(event)
    stored_period = ensure_utc(subscription.next_payment_date)
    if period_end is not None and stored_period is not None and period_end < stored_period:
        return True
    last_applied = ensure_utc(subscription.last_gateway_event_at)
    return last_applied is not None and event.envelope.created < last_applied


def _activates(event: GatewayEvent) -> bool:
    if isinstance(event, SubscriptionSynced):
        return event.status.value in _PAID_STATUSES
    return isinstance(event, InvoicePaid) and event.amount_paid > 0


def _extend_end_date(subscription: Subscription, period_end: datetime) -> None:
    current = ensure_utc(subscription.end_date)
    if current is None or period_end > current:
        subscription.end_date = period_end


class WebhookReconciler:
    """Each event is reconciled in its own session and transaction.

    A failing handler is rolled back and never raises to the caller. Database
    and optimistic-lock errors are reported as ``FAILED`` so the gateway
    redelivers the event. Any other handler error is ``REJECTED``: it is audited
    and acknowledged, because redelivering the same event would fail again.
    """

    def __init__(
        self,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
        cache: Optional[StatusCache] = None,
        dedupe: bool = True,
        audit: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache if cache is not None else default_status_cache
        self._dedupe = dedupe
        self._audit = audit
        self._handlers: Dict[type, Callable[[Session, Subscription, Any], bool]] = {
            SubscriptionSynced: self._on_subscription_synced,
            SubscriptionDeleted: self._on_subscription_deleted,
            InvoicePaid: self._on_invoice_paid,
            InvoicePaymentFailed: self._on_invoice_failed,
            TrialWillEnd: self._on_trial_will_end,
        }

    def _new_session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    def process(
        self,
        event: GatewayEvent,
        *,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        envelope = event.envelope
        context = {
            "eventId": envelope.event_id,
            "eventType": envelope.event_type,
            "gatewaySubscriptionId": gateway_subscription_id_of(event),
        }

        if self._dedupe and webhook_store.has_processed_event(envelope.event_id):
            logger.info("Duplicate webhook event skipped.", extra={"webhook": context})
            result = ReconcileResult(ReconcileOutcome.DUPLICATE, envelope.event_id, envelope.event_type)
            WEBHOOK_EVENTS.labels(event_type=envelope.event_type, outcome=result.outcome.value).inc()
            return result

        if isinstance(event, IgnoredEvent):
            result = ReconcileResult(ReconcileOutcome.IGNORED, envelope.event_id, envelope.event_type)
        else:
            result = self._reconcile(event, now=ensure_utc(now or utcnow()), context=context)

        if result.acknowledged and self._dedupe:
            webhook_store.record_processed_event(
                envelope.event_id, event_type=envelope.event_type, outcome=result.outcome.value
            )
        if result.outcome is ReconcileOutcome.APPLIED and result.organization_id is not None:
            self._cache.invalidate(result.organization_id)

        WEBHOOK_EVENTS.labels(event_type=envelope.event_type, outcome=result.outcome.value).inc()
        if self._audit and result.outcome is not ReconcileOutcome.IGNORED:
            record_webhook_audit(
                self._session_factory or database.SessionLocal,
                result=result.outcome.value,
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                gateway_subscription_id=context["gatewaySubscriptionId"],
                message=result.message,
                context=context,
                payload=payload,
            )
        return result

    def _reconcile(self, event: GatewayEvent, *, now: datetime, context: Dict[str, Any]) -> ReconcileResult:
        envelope = event.envelope
        session = self._new_session()
        try:
            gateway_id = gateway_subscription_id_of(event)
            subscription = subscription_store.find_by_gateway_id(session, gateway_id, for_update=True)
            if subscription is None:
                unmatched = WebhookUnmatched(gateway_id, envelope.event_type)
                logger.warning("%s", unmatched.message, extra={"webhook": context})
                session.rollback()
                return ReconcileResult(
                    ReconcileOutcome.UNMATCHED, envelope.event_id, envelope.event_type, message=unmatched.message
                )

            org_id, subscription_id = subscription.organization_id, subscription.id
            if is_stale_event(subscription, event):
                logger.info("Stale webhook event skipped.", extra={"webhook": context})
                session.rollback()
                return ReconcileResult(
                    ReconcileOutcome.STALE,
                    envelope.event_id,
                    envelope.event_type,
                    organization_id=org_id,
                    subscription_id=subscription_id,
                    message="event older than the stored subscription state",
                )

            handler = self._handlers[type(event)]
            if handler(session, subscription, event):
                last_applied = ensure_utc(subscription.last_gateway_event_at)
                if last_applied is None or envelope.created > last_applied:
                    subscription.last_gateway_event_at = envelope.created
            message = UNRESOLVED_PLAN_MESSAGE if subscription.plan_id is None and _activates(event) else None
            subscription_store.flush_changes(session)
            session.commit()
        except _RETRYABLE_ERRORS as exc:
            session.rollback()
            logger.exception("Webhook reconciliation failed; awaiting redelivery: %s", exc, extra={"webhook": context})
            return ReconcileResult(ReconcileOutcome.FAILED, envelope.event_id, envelope.event_type, message=str(exc))
        except Exception as exc:  # handler isolation boundary
            session.rollback()
            logger.exception("Webhook event rejected: %s", exc, extra={"webhook": context})
            return ReconcileResult(ReconcileOutcome.REJECTED, envelope.event_id, envelope.event_type, message=str(exc))
        finally:
            session.close()

        logger.info("Webhook event applied.", extra={"webhook": context})
        return ReconcileResult(
            ReconcileOutcome.APPLIED,
            envelope.event_id,
            envelope.event_type,
            organization_id=org_id,
            subscription_id=subscription_id,
            message=message,
        )

    def record_invalid_payload(self, payload: Any, error: str) -> ReconcileResult:
        """Audit a signed delivery whose body cannot be turned into a typed event."""

        event_id = payload.get("id") if isinstance(payload, dict) and isinstance(payload.get("id"), str) else None
        event_type = payload.get("type") if isinstance(payload, dict) and isinstance(payload.get("type"), str) else None
        result = ReconcileResult(ReconcileOutcome.PAYLOAD_INVALID, event_id or "", event_type or "", message=error)
        logger.warning("Stripe webhook payload could not be parsed: %s", error, extra={"webhook": {"eventId": event_id}})
        WEBHOOK_EVENTS.labels(event_type=event_type or "unknown", outcome=result.outcome.value).inc()
        if self._audit:
            record_webhook_audit(
                self._session_factory or database.SessionLocal,
                result=result.outcome.value,
                event_id=event_id,
                event_type=event_type,
                message=error,
                payload=payload if isinstance(payload, dict) else None,
            )
        return result

    def _ensure_plan(self, session: Session, subscription: Subscription, price_id: Optional[str]) -> bool:
        """Attach the plan behind ``price_id`` to a plan-less subscription. False when none matches."""
        if subscription.plan_id is not None:
            return True
        match = plan_catalog.find_by_gateway_price(session, price_id)
        if match is None:
            logger.warning(
                "Subscription %s has no plan and gateway price %s matches none; status left as %s.",
                subscription.id,
                price_id,
                subscription.status,
            )
            return False
        plan, cycle = match
        subscription.plan_id = plan.id
        subscription.plan = plan
        subscription.billing_cycle = cycle.value
        subscription.amount = plan_catalog.snapshot_plan(plan).price_for(cycle)
        subscription.currency = plan.currency
        logger.info("Subscription %s attached to plan %s from gateway price %s.", subscription.id, plan.name, price_id)
        return True

    def _on_subscription_synced(self, session: Session, subscription: Subscription, event: SubscriptionSynced) -> bool:
        if event.customer_id and not subscription.gateway_customer_id:
            subscription.gateway_customer_id = event.customer_id
        if event.status.value in _PAID_STATUSES and not self._ensure_plan(session, subscription, event.price_id):
            return False

        previous = subscription.status
        subscription.status = event.status.value
        if event.trial_end is not None and SubscriptionStatus.TRIALING.value in (previous, event.status.value):
            subscription.trial_end_date = event.trial_end
        if event.current_period_end is not None:
            subscription.next_payment_date = event.current_period_end
            _extend_end_date(subscription, event.current_period_end)

        subscription.cancel_at_period_end = event.cancel_at_period_end
        if event.cancel_at_period_end or event.status is SubscriptionStatus.CANCELLED:
            if subscription.cancelled_at is None:
                subscription.cancelled_at = event.canceled_at or event.envelope.created
            subscription.auto_renew = False
        else:
            subscription.cancelled_at = None
            subscription.auto_renew = True
        return True

    def _on_subscription_deleted(self, session: Session, subscription: Subscription, event: SubscriptionDeleted) -> bool:
        subscription.status = SubscriptionStatus.CANCELLED.value
        if subscription.cancelled_at is None:
            subscription.cancelled_at = event.ended_at or event.envelope.created
        subscription.auto_renew = False
        subscription.cancel_at_period_end = False
        subscription_store.deactivate_organization(subscription.organization, DeactivationSource.BILLING)
        return True

    def _on_invoice_paid(self, session: Session, subscription: Subscription, event: InvoicePaid) -> bool:
        paid_at = event.paid_at or event.envelope.created
        trial_invoice = event.amount_paid == 0 and subscription.status == SubscriptionStatus.TRIALING.value
        plan_known = trial_invoice or self._ensure_plan(session, subscription, event.price_id)
        subscription.last_payment_date = paid_at
        if plan_known:
            if not trial_invoice:
                subscription.status = SubscriptionStatus.ACTIVE.value
            if event.period_end is not None:
                subscription.next_payment_date = event.period_end
                _extend_end_date(subscription, event.period_end)
            subscription_store.reactivate_after_payment(subscription.organization)

        existing = session.scalar(
            select(SubscriptionPayment.id).where(SubscriptionPayment.gateway_invoice_id == event.invoice_id)
        )
        if existing is None:
            session.add(
                SubscriptionPayment(
                    organization_id=subscription.organization_id,
                    subscription_id=subscription.id,
                    amount=Decimal(event.amount_paid),
                    currency=event.currency,
                    payment_method=PaymentMethod.STRIPE.value,
                    billing_cycle=subscription.billing_cycle,
                    transaction_id=subscription_store.next_transaction_id(session, paid_at),
                    gateway_invoice_id=event.invoice_id,
                    status=PaymentStatus.COMPLETED.value,
                    processed_by=WEBHOOK_PROCESSOR,
                    paid_at=paid_at,
                )
            )
        return True

    def _on_invoice_failed(self, session: Session, subscription: Subscription, event: InvoicePaymentFailed) -> bool:
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return False
        subscription.status = SubscriptionStatus.PAST_DUE.value
        logger.info(
            "Invoice %s failed for subscription %s (attempt %d).",
            event.invoice_id,
            subscription.id,
            event.attempt_count,
        )
        return True

    def _on_trial_will_end(self, session: Session, subscription: Subscription, event: TrialWillEnd) -> bool:
        logger.info(
            "Trial for organization %s ends at %s.",
            subscription.organization_id,
            event.trial_end.isoformat() if event.trial_end else "unknown",
        )
        return False


webhook_reconciler = WebhookReconciler()

__all__ = ["ReconcileOutcome", "ReconcileResult", "WebhookReconciler", "is_stale_event", "webhook_reconciler"]
