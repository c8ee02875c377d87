# core/errors.py
"""
Billing error taxonomy.

Every error carries the HTTP status the API layer answers with, so route
handlers can let them propagate and ``main.py`` maps them in one place.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for every error raised by the billing core."""

    status_code: int = 400
    code: str = "billing_error"
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update({k: v for k, v in self.context.items() if v is not None})
        return payload


class InvalidPlan(BillingError):
    status_code = 422
    code = "invalid_plan"

    def __init__(self, plan_id: Optional[str]):
        super().__init__(f"Unknown plan: {plan_id!r}", plan_id=plan_id)
        self.plan_id = plan_id


class OrganizationNotFound(BillingError):
    status_code = 404
    code = "organization_not_found"

    def __init__(self, organization_id: Optional[str]):
        super().__init__(f"Organization not found: {organization_id!r}", organization_id=organization_id)
        self.organization_id = organization_id


class OrganizationAlreadyExists(BillingError):
    status_code = 409
    code = "organization_exists"

    def __init__(self, organization_id: str):
        super().__init__(f"Organization already registered: {organization_id!r}", organization_id=organization_id)


class QuotaExceeded(BillingError):
    """Raised when a consume call would exceed the plan's quota (402 Payment Required)."""

    status_code = 402
    code = "quota_exceeded"

    def __init__(
        self,
        message: str,
        organization_id: str,
        plan_id: str,
        remaining: Optional[int] = None,
        upgrade_to: Optional[str] = None,
    ):
        super().__init__(
            message,
            organization_id=organization_id,
            plan_id=plan_id,
            remaining=remaining,
            upgrade_to=upgrade_to,
        )
        self.remaining = remaining


class SubscriptionNotActive(BillingError):
    status_code = 402
    code = "subscription_not_active"

    def __init__(self, message: str, organization_id: str, status: str):
        super().__init__(message, organization_id=organization_id, status=status)


class InvalidSignature(BillingError):
    code = "invalid_signature"


class MalformedEvent(BillingError):
    code = "malformed_event"


class PaymentConfigurationError(BillingError):
    """The provider refused a checkout request (bad price, bad parameters)."""

    code = "payment_configuration_error"


class InvalidTransition(BillingError):
    """A (status, trigger) pair the subscription state machine does not allow."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, organization_id: str, status: str, trigger: str):
        super().__init__(
            f"Transition {trigger!r} not allowed from status {status!r}",
            organization_id=organization_id,
            status=status,
            trigger=trigger,
        )
        self.status = status
        self.trigger = trigger


class TransientDependencyFailure(BillingError):
    """Persistence, provider or notification trouble; the caller should retry."""

    status_code = 503
    code = "transient_failure"
    retryable = True
