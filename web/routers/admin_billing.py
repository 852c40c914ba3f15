"""Super-administrator endpoints for subscriptions, payments and organization activation."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.time_utils import ensure_utc
from database import get_db
from models.billing import Organization, Subscription, SubscriptionPayment
from schemas.api.billing import (
    AdminSubscriptionCancelRequest,
    AdminSubscriptionCreateRequest,
    ManualPaymentRequest,
    OrganizationSchema,
    OrganizationUpdateRequest,
    PaymentListResponse,
    PaymentSchema,
    SubscriptionSchema,
)
from services.billing import subscription_store
from services.billing.errors import BillingError
from services.billing.orchestrator import SubscriptionOrchestrator
from services.billing.subscription_admin import SubscriptionAdmin
from services.billing.webhook_audit import recent_webhook_entries
from web.billing_errors import to_http_exception
from web.deps import CallerIdentity, get_orchestrator, get_subscription_admin, require_super_admin

router = APIRouter(prefix="/admin", tags=["Admin Billing"])


def _iso(value):
    return ensure_utc(value).isoformat() if value is not None else None


def serialize_subscription(subscription: Subscription) -> SubscriptionSchema:
    return SubscriptionSchema(
        id=subscription.id,
        organizationId=subscription.organization_id,
        planId=subscription.plan_id,
        planName=subscription.plan.name if subscription.plan is not None else None,
        status=subscription.status,
        billingCycle=subscription.billing_cycle,
        amount=subscription.amount,
        currency=subscription.currency,
        startDate=_iso(subscription.start_date),
        endDate=_iso(subscription.end_date),
        trialEndDate=_iso(subscription.trial_end_date),
        paymentMethod=subscription.payment_method,
        lastPaymentDate=_iso(subscription.last_payment_date),
        nextPaymentDate=_iso(subscription.next_payment_date),
        cancelAtPeriodEnd=subscription.cancel_at_period_end,
        cancelledAt=_iso(subscription.cancelled_at),
        cancelReason=subscription.cancel_reason,
    )


def serialize_payment(payment: SubscriptionPayment) -> PaymentSchema:
    return PaymentSchema(
        id=payment.id,
        organizationId=payment.organization_id,
        transactionId=payment.transaction_id,
        amount=payment.amount,
        currency=payment.currency,
        paymentMethod=payment.payment_method,
        billingCycle=payment.billing_cycle,
        status=payment.status,
        paidAt=_iso(payment.paid_at),
    )


def serialize_organization(organization: Organization) -> OrganizationSchema:
    return OrganizationSchema(
        id=organization.id,
        name=organization.name,
        isActive=organization.is_active,
        deactivationSource=organization.deactivation_source,
        subscriptionType=organization.subscription_type,
    )


@router.post(
    "/subscriptions",
    response_model=SubscriptionSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription manually",
)
def create_subscription(
    payload: AdminSubscriptionCreateRequest,
    admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
    service: SubscriptionAdmin = Depends(get_subscription_admin),
) -> SubscriptionSchema:
    try:
        subscription = service.create_subscription(
            db,
            payload.organizationId,
            plan_id=payload.planId,
            billing_cycle=payload.billingCycle,
            payment_method=payload.paymentMethod,
            trial_days=payload.trialDays,
            gateway_customer_id=payload.gatewayCustomerId,
            gateway_subscription_id=payload.gatewaySubscriptionId,
            notes=payload.notes,
            processed_by=admin.user_id,
        )
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return serialize_subscription(subscription)


@router.post(
    "/subscriptions/{org_id}/cancel",
    response_model=SubscriptionSchema,
    summary="Cancel an organization's subscription",
)
async def cancel_subscription(
    org_id: uuid.UUID,
    payload: AdminSubscriptionCancelRequest,
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
    service: SubscriptionAdmin = Depends(get_subscription_admin),
) -> SubscriptionSchema:
    try:
        subscription = await service.cancel_subscription(db, org_id, reason=payload.reason)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return await run_in_threadpool(serialize_subscription, subscription)


@router.post(
    "/subscriptions/{org_id}/payments",
    response_model=PaymentSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Record a manual payment",
)
def record_manual_payment(
    org_id: uuid.UUID,
    payload: ManualPaymentRequest,
    admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
) -> PaymentSchema:
    try:
        payment = orchestrator.record_manual_payment(
            db,
            org_id,
            amount=payload.amount,
            payment_method=payload.paymentMethod,
            billing_cycle=payload.billingCycle,
            transaction_id=payload.transactionId,
            processed_by=admin.user_id,
            notes=payload.notes,
        )
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return serialize_payment(payment)


@router.get("/subscriptions/payments", response_model=PaymentListResponse, summary="Payment history across organizations")
def list_payments(
    organizationId: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> PaymentListResponse:
    payments = subscription_store.list_payments(db, org_id=organizationId, limit=limit)
    return PaymentListResponse(payments=[serialize_payment(payment) for payment in payments])


@router.patch("/organizations/{org_id}", response_model=OrganizationSchema, summary="Activate or deactivate")
def update_organization(
    org_id: uuid.UUID,
    payload: OrganizationUpdateRequest,
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
    service: SubscriptionAdmin = Depends(get_subscription_admin),
) -> OrganizationSchema:
    if payload.isActive is None and payload.subscriptionType is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "organization.no_changes", "message": "Provide isActive or subscriptionType."},
        )
    try:
        organization = service.update_organization(
            db,
            org_id,
            is_active=payload.isActive,
            subscription_type=payload.subscriptionType,
        )
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return serialize_organization(organization)


@router.get("/billing/webhook-events", summary="Recent gateway webhook audit entries")
def list_webhook_events(
    limit: int = Query(50, ge=1, le=500),
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> Dict[str, List[Dict[str, Any]]]:
    return {"events": recent_webhook_entries(db, limit=limit)}
