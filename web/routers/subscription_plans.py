"""Subscription plan catalog administration."""

from __future__ import annotations

import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from database import get_db
from models.billing import SubscriptionPlan
from schemas.api.billing import (
    SubscriptionPlanFeatures,
    SubscriptionPlanLimits,
    SubscriptionPlanListResponse,
    SubscriptionPlanPayload,
    SubscriptionPlanSchema,
)
from services.billing import plan_catalog
from services.billing.errors import BillingError
from web.billing_errors import to_http_exception
from web.deps import CallerIdentity, get_caller, require_super_admin

router = APIRouter(prefix="/subscription-plans", tags=["Subscription Plans"])


def serialize_plan(plan: SubscriptionPlan) -> SubscriptionPlanSchema:
    return SubscriptionPlanSchema(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        monthlyPrice=plan.monthly_price,
        yearlyPrice=plan.yearly_price,
        currency=plan.currency,
        gatewayPriceIdMonthly=plan.gateway_price_id_monthly,
        gatewayPriceIdYearly=plan.gateway_price_id_yearly,
        limits=SubscriptionPlanLimits(
            maxPatients=plan.max_patients,
            maxUsers=plan.max_users,
            maxAppointments=plan.max_appointments,
        ),
        features=SubscriptionPlanFeatures(
            customBranding=plan.custom_branding,
            apiAccess=plan.api_access,
            prioritySupport=plan.priority_support,
            advancedReports=plan.advanced_reports,
            smsNotifications=plan.sms_notifications,
            emailNotifications=plan.email_notifications,
            dataBackup=plan.data_backup,
        ),
        isActive=plan.is_active,
        isDefault=plan.is_default,
        sortOrder=plan.sort_order,
    )


def payload_to_fields(payload: SubscriptionPlanPayload) -> Dict[str, Any]:
    return {
        "name": payload.name,
        "description": payload.description,
        "monthly_price": payload.monthlyPrice,
        "yearly_price": payload.yearlyPrice,
        "currency": payload.currency,
        "gateway_price_id_monthly": payload.gatewayPriceIdMonthly,
        "gateway_price_id_yearly": payload.gatewayPriceIdYearly,
        "max_patients": payload.limits.maxPatients,
        "max_users": payload.limits.maxUsers,
        "max_appointments": payload.limits.maxAppointments,
        "custom_branding": payload.features.customBranding,
        "api_access": payload.features.apiAccess,
        "priority_support": payload.features.prioritySupport,
        "advanced_reports": payload.features.advancedReports,
        "sms_notifications": payload.features.smsNotifications,
        "email_notifications": payload.features.emailNotifications,
        "data_backup": payload.features.dataBackup,
        "is_active": payload.isActive,
        "is_default": payload.isDefault,
        "sort_order": payload.sortOrder,
    }


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "subscription_plan.invalid", "message": str(exc)},
    )


@router.get("", response_model=SubscriptionPlanListResponse, summary="List subscription plans")
def list_subscription_plans(
    include_inactive: bool = Query(False, alias="includeInactive"),
    caller: CallerIdentity = Depends(get_caller),
    db: Session = Depends(get_db),
) -> SubscriptionPlanListResponse:
    if include_inactive and not caller.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "auth.forbidden", "message": "Only super administrators can list inactive plans."},
        )
    plans = plan_catalog.list_plans(db, include_inactive=include_inactive)
    return SubscriptionPlanListResponse(plans=[serialize_plan(plan) for plan in plans])


@router.post(
    "",
    response_model=SubscriptionPlanSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription plan",
)
def create_subscription_plan(
    payload: SubscriptionPlanPayload,
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> SubscriptionPlanSchema:
    try:
        plan = plan_catalog.create_plan(db, payload_to_fields(payload))
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    return serialize_plan(plan)


@router.put("/{plan_id}", response_model=SubscriptionPlanSchema, summary="Replace a subscription plan")
def update_subscription_plan(
    plan_id: uuid.UUID,
    payload: SubscriptionPlanPayload,
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> SubscriptionPlanSchema:
    try:
        plan = plan_catalog.update_plan(db, plan_id, payload_to_fields(payload))
        db.commit()
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    return serialize_plan(plan)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an unused subscription plan")
def delete_subscription_plan(
    plan_id: uuid.UUID,
    _admin: CallerIdentity = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> Response:
    try:
        plan_catalog.delete_plan(db, plan_id)
        db.commit()
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
