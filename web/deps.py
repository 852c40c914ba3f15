"""Shared FastAPI dependencies: caller identity, service accessors and the subscription guard."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.billing_constants import ORG_ADMIN_ROLES, SUPER_ADMIN_ROLE, PlanFeature
from database import get_db
from services.billing.entitlements import EntitlementContext, EntitlementResolver, entitlement_resolver
from services.billing.errors import AuthorizationDenied
from services.billing.feature_gate import ensure_feature
from services.billing.metering import MeteringService, metering_service
from services.billing.orchestrator import SubscriptionOrchestrator, subscription_orchestrator
from services.billing.reconciler import WebhookReconciler, webhook_reconciler
from services.billing.status_evaluator import ActiveStatus
from services.billing.status_service import SubscriptionStatusService, status_service
from services.billing.subscription_admin import SubscriptionAdmin, subscription_admin

USER_HEADER = "x-user-id"
ORG_HEADER = "x-organization-id"
ROLE_HEADER = "x-user-role"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: Optional[str]
    organization_id: Optional[uuid.UUID]
    role: Optional[str]

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN_ROLE


def _http_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _parse_uuid(value: Optional[str], *, field: str) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError as exc:
        raise _http_error(status.HTTP_400_BAD_REQUEST, "request.invalid_uuid", f"{field} must be a UUID.") from exc


def get_caller(request: Request) -> CallerIdentity:
    cached = getattr(request.state, "caller", None)
    if isinstance(cached, CallerIdentity):
        return cached
    role = (request.headers.get(ROLE_HEADER) or "").strip().lower() or None
    caller = CallerIdentity(
        user_id=(request.headers.get(USER_HEADER) or "").strip() or None,
        organization_id=_parse_uuid(request.headers.get(ORG_HEADER), field="X-Organization-Id"),
        role=role,
    )
    request.state.caller = caller
    return caller


def require_caller(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if caller.user_id is None:
        raise AuthorizationDenied("Authentication is required.", status_code=401)
    return caller


def require_super_admin(caller: CallerIdentity = Depends(require_caller)) -> CallerIdentity:
    if not caller.is_super_admin:
        raise AuthorizationDenied("Super administrator role is required.")
    return caller


def require_org_admin(caller: CallerIdentity = Depends(require_caller)) -> CallerIdentity:
    if caller.role not in ORG_ADMIN_ROLES:
        raise AuthorizationDenied("Organization administrator role is required.")
    return caller


def resolve_organization_id(
    request: Request,
    caller: CallerIdentity = Depends(require_caller),
) -> uuid.UUID:
    """The caller's organization; super administrators may target another via ``organizationId``."""

    requested = _parse_uuid(request.query_params.get("organizationId"), field="organizationId")
    if requested is not None and requested != caller.organization_id:
        if not caller.is_super_admin:
            raise AuthorizationDenied("You may only query your own organization.")
        return requested
    if caller.organization_id is None:
        raise _http_error(status.HTTP_400_BAD_REQUEST, "organization.required", "Organization context is missing.")
    return caller.organization_id


def get_status_service() -> SubscriptionStatusService:
    return status_service


def get_entitlement_resolver() -> EntitlementResolver:
    return entitlement_resolver


def get_metering_service() -> MeteringService:
    return metering_service


def get_orchestrator() -> SubscriptionOrchestrator:
    return subscription_orchestrator


def get_subscription_admin() -> SubscriptionAdmin:
    return subscription_admin


def get_webhook_reconciler() -> WebhookReconciler:
    return webhook_reconciler


def require_active_subscription(
    org_id: uuid.UUID = Depends(resolve_organization_id),
    db: Session = Depends(get_db),
    service: SubscriptionStatusService = Depends(get_status_service),
) -> ActiveStatus:
    """Route guard. Raises ``SubscriptionInactive``, which the app turns into a redirect or a 403."""

    return service.require_active(db, org_id)


def require_plan_feature(feature: PlanFeature | str):
    """Dependency factory guarding a route behind a plan feature.

    Raises ``FeatureUnavailable`` (403) when the governing plan lacks ``feature``
    and ``SubscriptionInactive`` when there is no governing plan at all.
    """

    name = PlanFeature(feature).value

    def _guard(
        org_id: uuid.UUID = Depends(resolve_organization_id),
        caller: CallerIdentity = Depends(require_caller),
        db: Session = Depends(get_db),
        resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    ) -> EntitlementContext:
        context = resolver.resolve(db, org_id, role=caller.role)
        ensure_feature(context.plan, name, role=caller.role)
        return context

    return _guard


__all__ = [
    "CallerIdentity",
    "get_caller",
    "get_entitlement_resolver",
    "get_metering_service",
    "get_orchestrator",
    "get_status_service",
    "get_subscription_admin",
    "get_webhook_reconciler",
    "require_active_subscription",
    "require_caller",
    "require_plan_feature",
    "require_org_admin",
    "require_super_admin",
    "resolve_organization_id",
]
