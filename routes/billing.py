# routes/billing.py
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool

from core.errors import TransientDependencyFailure
from schemas.billing_schema import (
    CancellationRequest,
    CancellationResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CheckoutVerification,
    InvitationBatch,
    PlanCatalogOut,
    PlanOut,
    QuotaDecision,
    UsageSummary,
    WebhookAck,
)
from services.container import BillingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_billing(request: Request) -> BillingServices:
    return request.app.state.billing


# -------------------------
# Plans
# -------------------------
@router.get("/plans", response_model=PlanCatalogOut)
def list_plans(billing: BillingServices = Depends(get_billing)):
    """Public plan catalog, as shown on the pricing page."""
    catalog = billing.catalog
    return PlanCatalogOut(
        version=catalog.version,
        plans=[
            PlanOut(checkout_mode=plan.checkout_mode, **plan.model_dump(exclude={"stripe_price_id"}))
            for plan in catalog.list_plans()
        ],
    )


# -------------------------
# Subscription & quota
# -------------------------
@router.get("/organizations/{organization_id}/subscription", response_model=UsageSummary)
def get_subscription(organization_id: str, billing: BillingServices = Depends(get_billing)):
    return billing.quota.get_usage(organization_id)


@router.get("/organizations/{organization_id}/quota/events", response_model=QuotaDecision)
def check_event_quota(organization_id: str, billing: BillingServices = Depends(get_billing)):
    return billing.quota.can_create_event(organization_id)


@router.get("/organizations/{organization_id}/quota/invitations", response_model=QuotaDecision)
def check_invitation_quota(
    organization_id: str,
    count: int = Query(default=1, ge=1, le=10000),
    billing: BillingServices = Depends(get_billing),
):
    return billing.quota.can_send_invitations(organization_id, count)


@router.post("/organizations/{organization_id}/quota/events/consume", response_model=QuotaDecision)
def consume_event(organization_id: str, billing: BillingServices = Depends(get_billing)):
    """Record one created event. Answers 402 when the plan does not allow it."""
    return billing.quota.consume_event(organization_id)


@router.post("/organizations/{organization_id}/quota/invitations/consume", response_model=QuotaDecision)
def consume_invitations(
    organization_id: str,
    payload: InvitationBatch,
    billing: BillingServices = Depends(get_billing),
):
    return billing.quota.consume_invitations(organization_id, payload.count)


# -------------------------
# Checkout
# -------------------------
@router.post("/checkout", response_model=CheckoutSessionResponse)
def create_checkout_session(payload: CheckoutSessionRequest, billing: BillingServices = Depends(get_billing)):
    """Create a Stripe Checkout session; the plan is granted by the webhook."""
    return billing.checkout.create_checkout_session(payload.organization_id, payload.plan_id, payload.customer_email)


@router.get("/verify-session", response_model=CheckoutVerification)
def verify_checkout_session(
    session_id: str = Query(..., min_length=1),
    billing: BillingServices = Depends(get_billing),
):
    """Success-page fallback: apply a paid session whose webhook has not landed yet."""
    return billing.checkout.verify_checkout_session(session_id)


# -------------------------
# Cancellation
# -------------------------
@router.post("/organizations/{organization_id}/cancel", response_model=CancellationResponse)
def cancel_subscription(
    organization_id: str,
    payload: Optional[CancellationRequest] = None,
    billing: BillingServices = Depends(get_billing),
):
    """Ask Stripe to cancel; the record changes when Stripe's webhook confirms it."""
    at_period_end = payload.at_period_end if payload is not None else True
    return billing.cancellation.request_cancellation(organization_id, at_period_end)


# -------------------------
# Stripe webhook
# -------------------------
@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(request: Request, billing: BillingServices = Depends(get_billing)):
    """Handle Stripe webhook events. Any non-2xx answer makes Stripe redeliver."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await asyncio.wait_for(
            run_in_threadpool(billing.reconciler.handle_external_event, payload, sig_header),
            timeout=billing.settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("⏱️ Webhook processing exceeded %ss", billing.settings.WEBHOOK_TIMEOUT_SECONDS)
        raise TransientDependencyFailure("Webhook processing timed out")

    return WebhookAck(
        status=result.status,
        event_id=result.event_id,
        event_type=result.event_type,
        detail=result.detail,
    )
