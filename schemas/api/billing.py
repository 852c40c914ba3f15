"""Pydantic schemas for subscription status, usage, plan administration and admin operations."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

BillingCycleLiteral = Literal["monthly", "yearly"]
PaymentMethodLiteral = Literal["stripe", "manual", "cash", "check"]
ResourceLiteral = Literal["patients", "users", "appointments"]


class SubscriptionStatusResponse(BaseModel):
    organizationId: uuid.UUID
    isActive: bool
    status: Optional[str] = Field(default=None, description="Local subscription status when active.")
    planName: Optional[str] = None
    daysRemaining: Optional[int] = Field(default=None, description="Whole days left. Null for unlimited accounts.")
    endsAt: Optional[str] = None
    billingCycle: Optional[str] = None
    reason: Optional[str] = Field(default=None, description="Why the organization is not active.")
    message: Optional[str] = None
    redirectTo: Optional[str] = Field(default=None, description="Remediation page for inactive organizations.")
    expiredAt: Optional[str] = None


class FeatureSetResponse(BaseModel):
    planName: str
    source: str = Field(..., description="unlimited, implicit_trial, trial, plan or super_admin.")
    features: List[str]
    labels: Dict[str, str] = Field(default_factory=dict)


class FeatureCheckRequest(BaseModel):
    feature: str = Field(..., min_length=1, max_length=64)


class FeatureCheckResponse(BaseModel):
    feature: str
    allowed: bool
    planName: str
    label: str


class LimitCheckResponse(BaseModel):
    resource: ResourceLiteral
    allowed: bool
    current: int
    limit: int = Field(..., description="-1 means unlimited.")
    remaining: Optional[int] = None
    planName: Optional[str] = None


class ResourceUsageSchema(BaseModel):
    resource: ResourceLiteral
    used: int
    limit: int
    periodStart: Optional[str] = None
    periodEnd: Optional[str] = None


class UsageSummaryResponse(BaseModel):
    organizationId: uuid.UUID
    planName: str
    periodStart: str
    periodEnd: str
    usage: List[ResourceUsageSchema]


class PlanChangeRequest(BaseModel):
    planId: uuid.UUID
    billingCycle: BillingCycleLiteral = "monthly"


class PlanChangeResponse(BaseModel):
    changed: bool
    subscriptionId: uuid.UUID
    planId: Optional[uuid.UUID] = None
    planName: Optional[str] = None
    billingCycle: BillingCycleLiteral
    amount: Decimal
    currency: str
    gatewaySynced: bool = False


class SubscriptionPlanLimits(BaseModel):
    maxPatients: int = Field(default=-1, ge=-1)
    maxUsers: int = Field(default=-1, ge=-1)
    maxAppointments: int = Field(default=-1, ge=-1)


class SubscriptionPlanFeatures(BaseModel):
    customBranding: bool = False
    apiAccess: bool = False
    prioritySupport: bool = False
    advancedReports: bool = False
    smsNotifications: bool = False
    emailNotifications: bool = True
    dataBackup: bool = False


class SubscriptionPlanPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    monthlyPrice: Decimal = Field(..., ge=0)
    yearlyPrice: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    gatewayPriceIdMonthly: Optional[str] = None
    gatewayPriceIdYearly: Optional[str] = None
    limits: SubscriptionPlanLimits = Field(default_factory=SubscriptionPlanLimits)
    features: SubscriptionPlanFeatures = Field(default_factory=SubscriptionPlanFeatures)
    isActive: bool = True
    isDefault: bool = False
    sortOrder: int = 0

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class SubscriptionPlanSchema(SubscriptionPlanPayload):
    id: uuid.UUID


class SubscriptionPlanListResponse(BaseModel):
    plans: List[SubscriptionPlanSchema]


class AdminSubscriptionCreateRequest(BaseModel):
    organizationId: uuid.UUID
    planId: Optional[uuid.UUID] = Field(default=None, description="Omit for a plan-less trial.")
    billingCycle: BillingCycleLiteral = "monthly"
    paymentMethod: PaymentMethodLiteral = "manual"
    trialDays: Optional[int] = Field(default=None, ge=0, le=365)
    gatewayCustomerId: Optional[str] = None
    gatewaySubscriptionId: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AdminSubscriptionCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ManualPaymentRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    paymentMethod: Literal["cash", "manual", "check"] = "cash"
    billingCycle: Optional[BillingCycleLiteral] = None
    transactionId: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=2000)


class SubscriptionSchema(BaseModel):
    id: uuid.UUID
    organizationId: uuid.UUID
    planId: Optional[uuid.UUID] = None
    planName: Optional[str] = None
    status: str
    billingCycle: BillingCycleLiteral
    amount: Decimal
    currency: str
    startDate: str
    endDate: str
    trialEndDate: Optional[str] = None
    paymentMethod: str
    lastPaymentDate: Optional[str] = None
    nextPaymentDate: Optional[str] = None
    cancelAtPeriodEnd: bool = False
    cancelledAt: Optional[str] = None
    cancelReason: Optional[str] = None


class PaymentSchema(BaseModel):
    id: uuid.UUID
    organizationId: uuid.UUID
    transactionId: str
    amount: Decimal
    currency: str
    paymentMethod: str
    billingCycle: BillingCycleLiteral
    status: str
    paidAt: str


class PaymentListResponse(BaseModel):
    payments: List[PaymentSchema]


class OrganizationUpdateRequest(BaseModel):
    isActive: Optional[bool] = None
    subscriptionType: Optional[Literal["regular", "unlimited"]] = None


class OrganizationSchema(BaseModel):
    id: uuid.UUID
    name: str
    isActive: bool
    deactivationSource: Optional[str] = None
    subscriptionType: str


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: str
    eventId: Optional[str] = None


__all__ = [
    "AdminSubscriptionCancelRequest",
    "AdminSubscriptionCreateRequest",
    "FeatureCheckRequest",
    "FeatureCheckResponse",
    "FeatureSetResponse",
    "LimitCheckResponse",
    "ManualPaymentRequest",
    "OrganizationSchema",
    "OrganizationUpdateRequest",
    "PaymentListResponse",
    "PaymentSchema",
    "PlanChangeRequest",
    "PlanChangeResponse",
    "ResourceUsageSchema",
    "SubscriptionPlanListResponse",
    "SubscriptionPlanPayload",
    "SubscriptionPlanSchema",
    "SubscriptionSchema",
    "SubscriptionStatusResponse",
    "UsageSummaryResponse",
    "WebhookAckResponse",
]
