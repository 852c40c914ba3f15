"""Tenant-facing subscription endpoints: status, features, limits, usage, plan changes and payment history."""

from __future__ import annotations

import csv
import io
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from core.billing_constants import MeteredResource, PlanFeature
from core.time_utils import ensure_utc
from database import get_db
from schemas.api.billing import (
    FeatureCheckRequest,
    FeatureCheckResponse,
    FeatureSetResponse,
    LimitCheckResponse,
    PaymentListResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    ResourceUsageSchema,
    SubscriptionStatusResponse,
    UsageSummaryResponse,
)
from services.billing import subscription_store
from services.billing.entitlements import EntitlementContext, EntitlementResolver
from services.billing.errors import BillingError
from services.billing.feature_gate import capabilities_for, feature_label, is_known_feature
from services.billing.metering import MeteringService
from services.billing.orchestrator import SubscriptionOrchestrator
from services.billing.status_service import SubscriptionStatusService
from web.billing_errors import to_http_exception
from web.deps import (
    CallerIdentity,
    get_entitlement_resolver,
    get_metering_service,
    get_orchestrator,
    get_status_service,
    require_caller,
    require_org_admin,
    require_plan_feature,
    resolve_organization_id,
)
from web.routers.admin_billing import serialize_payment

router = APIRouter(prefix="/subscription", tags=["Subscription"])


@router.get("/status", response_model=SubscriptionStatusResponse, summary="Evaluate subscription status")
def read_subscription_status(
    org_id: uuid.UUID = Depends(resolve_organization_id),
    db: Session = Depends(get_db),
    service: SubscriptionStatusService = Depends(get_status_service),
) -> SubscriptionStatusResponse:
    try:
        outcome = service.check(db, org_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionStatusResponse(organizationId=org_id, **outcome.to_dict())


@router.get("/features", response_model=FeatureSetResponse, summary="List features available to the organization")
def read_features(
    org_id: uuid.UUID = Depends(resolve_organization_id),
    caller: CallerIdentity = Depends(require_caller),
    db: Session = Depends(get_db),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> FeatureSetResponse:
    try:
        context = resolver.resolve(db, org_id, role=caller.role)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    features = sorted(capabilities_for(context.plan, role=caller.role))
    return FeatureSetResponse(
        planName=context.plan_name,
        source=context.source,
        features=features,
        labels={feature: feature_label(feature) for feature in features},
    )


@router.post("/features/check", response_model=FeatureCheckResponse, summary="Check a single feature")
def check_feature(
    payload: FeatureCheckRequest,
    org_id: uuid.UUID = Depends(resolve_organization_id),
    caller: CallerIdentity = Depends(require_caller),
    db: Session = Depends(get_db),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> FeatureCheckResponse:
    if not is_known_feature(payload.feature):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "subscription.unknown_feature", "message": f"Unknown feature '{payload.feature}'."},
        )
    try:
        context = resolver.resolve(db, org_id, role=caller.role)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return FeatureCheckResponse(
        feature=payload.feature,
        allowed=payload.feature in capabilities_for(context.plan, role=caller.role),
        planName=context.plan_name,
        label=feature_label(payload.feature),
    )


@router.get("/limits/{resource}", response_model=LimitCheckResponse, summary="May one more record be created?")
def check_resource_limit(
    resource: MeteredResource,
    org_id: uuid.UUID = Depends(resolve_organization_id),
    caller: CallerIdentity = Depends(require_caller),
    db: Session = Depends(get_db),
    metering: MeteringService = Depends(get_metering_service),
) -> LimitCheckResponse:
    try:
        decision = metering.check(db, org_id, resource, role=caller.role)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return LimitCheckResponse(**decision.to_dict())


@router.get("/usage", response_model=UsageSummaryResponse, summary="Current period usage against plan limits")
def read_usage(
    org_id: uuid.UUID = Depends(resolve_organization_id),
    caller: CallerIdentity = Depends(require_caller),
    db: Session = Depends(get_db),
    metering: MeteringService = Depends(get_metering_service),
) -> UsageSummaryResponse:
    try:
        snapshot = metering.usage_snapshot(db, org_id, role=caller.role)
        db.commit()
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return UsageSummaryResponse(
        organizationId=org_id,
        planName=snapshot.plan_name,
        periodStart=snapshot.period_start.isoformat(),
        periodEnd=snapshot.period_end.isoformat(),
        usage=[ResourceUsageSchema(**usage.to_dict()) for usage in snapshot.resources.values()],
    )


@router.post("/upgrade", response_model=PlanChangeResponse, summary="Change plan or billing cycle")
async def change_plan(
    payload: PlanChangeRequest,
    org_id: uuid.UUID = Depends(resolve_organization_id),
    _admin: CallerIdentity = Depends(require_org_admin),
    db: Session = Depends(get_db),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
) -> PlanChangeResponse:
    try:
        result = await orchestrator.change_plan(
            db,
            org_id,
            payload.planId,
            payload.billingCycle,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return PlanChangeResponse(
        changed=result.changed,
        subscriptionId=result.subscription_id,
        planId=result.plan_id,
        planName=result.plan_name,
        billingCycle=result.billing_cycle,
        amount=result.amount,
        currency=result.currency,
        gatewaySynced=result.gateway_synced,
    )


@router.get("/payments", response_model=PaymentListResponse, summary="Payment history for the organization")
def list_payments(
    limit: int = Query(100, ge=1, le=500),
    org_id: uuid.UUID = Depends(resolve_organization_id),
    db: Session = Depends(get_db),
) -> PaymentListResponse:
    payments = subscription_store.list_payments(db, org_id=org_id, limit=limit)
    return PaymentListResponse(payments=[serialize_payment(payment) for payment in payments])


_EXPORT_COLUMNS = ("transaction_id", "paid_at", "amount", "currency", "payment_method", "billing_cycle", "status")


@router.get("/payments/export", summary="Download payment history as CSV")
def export_payments(
    org_id: uuid.UUID = Depends(resolve_organization_id),
    db: Session = Depends(get_db),
    plan: EntitlementContext = Depends(require_plan_feature(PlanFeature.ADVANCED_REPORTS)),
) -> StreamingResponse:
    _ = plan
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(_EXPORT_COLUMNS)
    for payment in subscription_store.list_payments(db, org_id=org_id, limit=10_000):
        writer.writerow(
            [
                payment.transaction_id,
                ensure_utc(payment.paid_at).isoformat(),
                str(payment.amount),
                payment.currency,
                payment.payment_method,
                payment.billing_cycle,
                payment.status,
            ]
        )
    return StreamingResponse(
        io.BytesIO(buffer.getvalue().encode("utf-8")),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="payments-{org_id}.csv"'},
    )
