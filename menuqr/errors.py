"""
Domain exceptions for subscriptions, entitlements and delivery dispatch.

Every error carries a machine-readable code and the HTTP status the API
layer answers with, so routers never translate errors by hand.
"""

from typing import Any


class MenuQRError(Exception):
    """
    Base error with structured context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "MENUQR_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class NotFoundError(MenuQRError):
    """Requested entity does not exist."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "NOT_FOUND", status_code=404, context=context)


class PlanNotFoundError(NotFoundError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Plan '{slug}' does not exist", context={"plan_slug": slug})
        self.error_code = "PLAN_NOT_FOUND"


class NoSubscriptionError(NotFoundError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__("Tenant has no subscription", context={"tenant_id": tenant_id})
        self.error_code = "NO_SUBSCRIPTION"
        self.recovery_hint = "Create a subscription for the tenant first"


class DeliveryNotFoundError(NotFoundError):
    def __init__(self, delivery_id: str) -> None:
        super().__init__("Delivery not found", context={"delivery_id": delivery_id})
        self.error_code = "DELIVERY_NOT_FOUND"


class InvalidTransitionError(MenuQRError):
    """A command was issued from a state that does not allow it."""

    def __init__(self, current: str, attempted: str, message: str | None = None):
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Cannot move from '{current}' to '{attempted}'",
            "INVALID_TRANSITION",
            status_code=409,
            context={"current": current, "attempted": attempted},
        )


class LimitExceededError(MenuQRError):
    """Consuming a resource would go over the plan limit."""

    def __init__(self, resource: str, current_usage: int, limit: int, requested: int = 1):
        self.resource = resource
        self.current_usage = current_usage
        self.limit = limit
        super().__init__(
            f"Limit reached for '{resource}' ({current_usage}/{limit})",
            "LIMIT_EXCEEDED",
            status_code=403,
            context={
                "resource": resource,
                "current_usage": current_usage,
                "limit": limit,
                "requested": requested,
            },
            recovery_hint="Upgrade the plan or free up existing items",
        )


class FeatureNotEnabledError(MenuQRError):
    """The tenant's plan does not include the requested feature."""

    def __init__(self, feature: str, plan_slug: str | None = None):
        self.feature = feature
        context: dict[str, Any] = {"feature": feature}
        if plan_slug:
            context["plan_slug"] = plan_slug
        super().__init__(
            f"Feature '{feature}' is not available on the current plan",
            "FEATURE_NOT_ENABLED",
            status_code=403,
            context=context,
            recovery_hint="Upgrade to a plan that includes this feature",
        )


class SubscriptionInactiveError(MenuQRError):
    def __init__(self, tenant_id: str, status: str):
        super().__init__(
            "Subscription is not active",
            "SUBSCRIPTION_INACTIVE",
            status_code=403,
            context={"tenant_id": tenant_id, "status": status},
            recovery_hint="Reactivate the subscription or settle the pending payment",
        )


class BlockedError(MenuQRError):
    """An operation is refused until an external condition clears."""

    def __init__(self, reason: str, message: str, context: dict[str, Any] | None = None):
        self.reason = reason
        super().__init__(
            message,
            "BLOCKED",
            status_code=409,
            context={"reason": reason, **(context or {})},
        )


class DuplicateSubscriptionError(MenuQRError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            "Tenant already has a subscription",
            "DUPLICATE_SUBSCRIPTION",
            status_code=409,
            context={"tenant_id": tenant_id},
        )


class NoPendingChangeError(MenuQRError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            "No scheduled plan change to cancel",
            "NO_PENDING_CHANGE",
            status_code=409,
            context={"tenant_id": tenant_id},
        )


class ConcurrencyConflictError(MenuQRError):
    """Stored version moved on between read and write."""

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity} was modified concurrently",
            "CONCURRENCY_CONFLICT",
            status_code=409,
            context={"entity": entity, "id": entity_id, "expected_version": expected_version},
            recovery_hint="Retry the request",
        )


class ProofOfDeliveryRequiredError(MenuQRError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "Proof of delivery is incomplete",
            "PROOF_OF_DELIVERY_REQUIRED",
            status_code=422,
            context={"missing": missing},
        )


class NotAssignedDriverError(MenuQRError):
    def __init__(self, delivery_id: str, driver_id: str) -> None:
        super().__init__(
            "Driver is not assigned to this delivery",
            "NOT_ASSIGNED_DRIVER",
            status_code=403,
            context={"delivery_id": delivery_id, "driver_id": driver_id},
        )
