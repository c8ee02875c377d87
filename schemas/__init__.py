from .billing_schema import (
    CancellationRequest, CancellationResponse,
    CheckoutSessionRequest, CheckoutSessionResponse, CheckoutVerification,
    InvitationBatch,
    OrganizationCreate,
    PlanCatalogOut, PlanOut,
    QuotaDecision,
    SubscriptionRead,
    UsageSummary,
    WebhookAck,
)

__all__ = [
    # Plans
    "PlanOut", "PlanCatalogOut",

    # Quota
    "QuotaDecision", "UsageSummary", "InvitationBatch",

    # Organization
    "OrganizationCreate", "SubscriptionRead",

    # Checkout / Webhook
    "CheckoutSessionRequest", "CheckoutSessionResponse", "CheckoutVerification", "WebhookAck",

    # Cancellation
    "CancellationRequest", "CancellationResponse",
]
