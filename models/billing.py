"""Subscription, plan and usage tables owned by the billing subsystem."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Organization(Base):
    """Tenant account. ``is_active`` is the administrative switch that outranks billing."""

    __tablename__ = "billing_organizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivation_source = Column(String(16), nullable=True)
    subscription_type = Column(String(16), nullable=False, default="regular")
    gateway_customer_id = Column(String(120), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    subscription = relationship("Subscription", back_populates="organization", uselist=False)


class SubscriptionPlan(Base):
    """Catalog entry. A limit of -1 means unlimited."""

    __tablename__ = "subscription_plans"
    __table_args__ = (
        CheckConstraint("max_patients >= -1", name="ck_subscription_plans_max_patients"),
        CheckConstraint("max_users >= -1", name="ck_subscription_plans_max_users"),
        CheckConstraint("max_appointments >= -1", name="ck_subscription_plans_max_appointments"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(120), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    monthly_price = Column(Numeric(10, 2), nullable=False)
    yearly_price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    gateway_price_id_monthly = Column(String(120), nullable=True)
    gateway_price_id_yearly = Column(String(120), nullable=True)
    max_patients = Column(Integer, nullable=False, default=-1)
    max_users = Column(Integer, nullable=False, default=-1)
    max_appointments = Column(Integer, nullable=False, default=-1)
    custom_branding = Column(Boolean, nullable=False, default=False)
    api_access = Column(Boolean, nullable=False, default=False)
    priority_support = Column(Boolean, nullable=False, default=False)
    advanced_reports = Column(Boolean, nullable=False, default=False)
    sms_notifications = Column(Boolean, nullable=False, default=False)
    email_notifications = Column(Boolean, nullable=False, default=True)
    data_backup = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Subscription(Base):
    """One subscription per organization; never hard-deleted."""

    __tablename__ = "subscriptions"
    __table_args__ = (CheckConstraint("end_date >= start_date", name="ck_subscriptions_period"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="active", index=True)
    billing_cycle = Column(String(16), nullable=False, default="monthly")
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    start_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)
    gateway_customer_id = Column(String(120), nullable=True)
    gateway_subscription_id = Column(String(120), nullable=True, unique=True)
    payment_method = Column(String(16), nullable=False, default="manual")
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    next_payment_date = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    last_gateway_event_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    organization = relationship("Organization", back_populates="subscription")
    plan = relationship("SubscriptionPlan")

    __mapper_args__ = {"version_id_col": version}


class SubscriptionPayment(Base):
    """Payment history entry for manual collection and gateway invoices."""

    __tablename__ = "subscription_payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_method = Column(String(16), nullable=False)
    billing_cycle = Column(String(16), nullable=False)
    transaction_id = Column(String(64), nullable=False, unique=True)
    gateway_invoice_id = Column(String(120), nullable=True, unique=True)
    status = Column(String(16), nullable=False, default="completed")
    processed_by = Column(String(120), nullable=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UsageCounter(Base):
    """Cached per-period usage; always recomputable from the practice tables."""

    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("organization_id", "resource", name="uq_usage_counters_org_resource"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource = Column(String(32), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=False)
    last_reset_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    version = Column(Integer, nullable=False, default=1)


class BillingWebhookEventLog(Base):
    """Audit trail for gateway webhook deliveries."""

    __tablename__ = "billing_webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(120), nullable=True, index=True)
    event_type = Column(String(80), nullable=True, index=True)
    gateway_subscription_id = Column(String(120), nullable=True, index=True)
    result = Column(String(32), nullable=False, index=True)
    message = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


__all__ = [
    "BillingWebhookEventLog",
    "Organization",
    "Subscription",
    "SubscriptionPayment",
    "SubscriptionPlan",
    "UsageCounter",
]
