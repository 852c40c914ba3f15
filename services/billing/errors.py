"""Error types raised by the billing services and translated by the routers."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base class carrying a stable ``code`` and the HTTP status the API should use."""

    code = "billing.error"
    status_code = 400

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def extra_detail(self) -> Dict[str, Any]:
        return {}

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update({key: value for key, value in self.extra_detail().items() if value is not None})
        return detail


class AuthorizationDenied(BillingError):
    code = "auth.forbidden"
    status_code = 403

    def __init__(self, message: str = "You are not allowed to perform this action.", *, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code
        if status_code == 401:
            self.code = "auth.required"


class SubscriptionInactive(BillingError):
    """The organization may not use the product right now."""

    code = "subscription.inactive"
    status_code = 403

    def __init__(self, reason: str, message: str, *, redirect_to: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.redirect_to = redirect_to

    def extra_detail(self) -> Dict[str, Any]:
        return {"reason": self.reason, "redirectTo": self.redirect_to}


class LimitExceeded(BillingError):
    code = "subscription.limit_exceeded"
    status_code = 429

    def __init__(self, resource: str, current: int, limit: int, plan_name: Optional[str] = None) -> None:
        plan_label = plan_name or "current"
        message = f"You have reached the {resource} limit of your {plan_label} plan ({current}/{limit})."
        super().__init__(message)
        self.resource = resource
        self.current = current
        self.limit = limit
        self.plan_name = plan_name

    def extra_detail(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "current": self.current,
            "limit": self.limit,
            "planName": self.plan_name,
        }


class FeatureUnavailable(BillingError):
    code = "subscription.feature_unavailable"
    status_code = 403

    def __init__(self, feature: str, plan_name: Optional[str], *, label: Optional[str] = None) -> None:
        plan_label = plan_name or "current"
        super().__init__(f"'{label or feature}' is not available on the {plan_label} plan.")
        self.feature = feature
        self.plan_name = plan_name

    def extra_detail(self) -> Dict[str, Any]:
        return {"feature": self.feature, "planName": self.plan_name}


class GatewayCallFailed(BillingError):
    code = "billing.gateway_failed"
    status_code = 502

    def __init__(self, message: str, *, operation: Optional[str] = None, gateway_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.gateway_status = gateway_status

    def extra_detail(self) -> Dict[str, Any]:
        return {"operation": self.operation}


class PaymentMethodRequired(BillingError):
    code = "billing.payment_method_required"
    status_code = 400

    def __init__(self, message: str = "Add a payment method before switching to a paid plan.") -> None:
        super().__init__(message)


class _NotFound(BillingError):
    status_code = 404

    def __init__(self, identifier: object, *, label: str) -> None:
        super().__init__(f"{label} '{identifier}' was not found.")
        self.identifier = identifier


class PlanNotFound(_NotFound):
    code = "subscription_plan.not_found"

    def __init__(self, identifier: object) -> None:
        super().__init__(identifier, label="Subscription plan")


class SubscriptionNotFound(_NotFound):
    code = "subscription.not_found"

    def __init__(self, identifier: object) -> None:
        super().__init__(identifier, label="Subscription for organization")


class OrganizationNotFound(_NotFound):
    code = "organization.not_found"

    def __init__(self, identifier: object) -> None:
        super().__init__(identifier, label="Organization")


class PlanInUse(BillingError):
    code = "subscription_plan.in_use"
    status_code = 409

    def __init__(self, plan_name: str, subscription_count: int) -> None:
        super().__init__(
            f"Plan '{plan_name}' is referenced by {subscription_count} subscription(s) and cannot be deleted."
        )
        self.plan_name = plan_name
        self.subscription_count = subscription_count


class ConcurrentUpdate(BillingError):
    code = "subscription.concurrent_update"
    status_code = 409

    def __init__(self, message: str = "The subscription was modified concurrently. Retry the request.") -> None:
        super().__init__(message)


class PlanRequired(BillingError):
    code = "subscription.plan_required"
    status_code = 400

    def __init__(self, message: str = "Assign a plan before recording a payment.") -> None:
        super().__init__(message)


class SubscriptionExists(BillingError):
    code = "subscription.already_exists"
    status_code = 409

    def __init__(self, message: str = "The organization already has a live subscription; change its plan instead.") -> None:
        super().__init__(message)


class DuplicateTransaction(BillingError):
    code = "payment.duplicate_transaction"
    status_code = 409

    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Transaction id '{transaction_id}' was already recorded.")
        self.transaction_id = transaction_id


class WebhookSignatureInvalid(BillingError):
    code = "billing.webhook_signature_invalid"
    status_code = 400


class WebhookUnmatched(BillingError):
    """No local subscription carries the event's gateway subscription id. Logged and acknowledged."""

    code = "billing.webhook_unmatched"
    status_code = 200

    def __init__(self, gateway_subscription_id: Optional[str], event_type: str) -> None:
        super().__init__(f"No subscription matches gateway id '{gateway_subscription_id}' for {event_type}.")
        self.gateway_subscription_id = gateway_subscription_id
        self.event_type = event_type


__all__ = [
    "AuthorizationDenied",
    "BillingError",
    "ConcurrentUpdate",
    "DuplicateTransaction",
    "FeatureUnavailable",
    "GatewayCallFailed",
    "LimitExceeded",
    "OrganizationNotFound",
    "PaymentMethodRequired",
    "PlanInUse",
    "PlanNotFound",
    "PlanRequired",
    "SubscriptionExists",
    "SubscriptionInactive",
    "SubscriptionNotFound",
    "WebhookSignatureInvalid",
    "WebhookUnmatched",
]
