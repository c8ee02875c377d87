# billing_schema.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.models import PlanKind, SubscriptionStatus

DenialCode = Literal["quota_exceeded", "subscription_not_active"]


# ---------------------------
# Plans
# ---------------------------
class PlanOut(BaseModel):
    id: str
    kind: PlanKind
    name: str
    description: str
    price: int
    currency: str
    checkout_mode: str
    event_credits_granted: Optional[int]
    event_cap: Optional[int]
    invitation_cap: Optional[int]
    validity_months: Optional[int]
    billing_interval_months: Optional[int]
    features: List[str]


class PlanCatalogOut(BaseModel):
    version: str
    plans: List[PlanOut]


# ---------------------------
# Quota
# ---------------------------
class QuotaDecision(BaseModel):
    allowed: bool
    plan_id: str
    reason: Optional[str] = None
    # None = unlimited
    remaining: Optional[int] = None
    code: Optional[DenialCode] = None
    upgrade_to: Optional[str] = None


class UsageSummary(BaseModel):
    organization_id: str
    plan_id: str
    plan_name: str
    plan_kind: PlanKind
    status: SubscriptionStatus
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    days_until_expiry: Optional[int]
    events_created: int
    invitations_sent: int
    remaining_events: Optional[int]
    remaining_invitations: Optional[int]
    cancel_at_period_end: bool = False
    can_create_event: QuotaDecision


class InvitationBatch(BaseModel):
    count: int = Field(default=1, ge=1, le=10000)


# ---------------------------
# Organization
# ---------------------------
class OrganizationCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    contact_email: Optional[str] = Field(default=None, max_length=255)


class SubscriptionRead(BaseModel):
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    remaining_event_credits: Optional[int]
    events_created_counter: int
    invitations_sent_counter: int
    cancel_at_period_end: bool = False
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Checkout / Webhook
# ---------------------------
class CheckoutSessionRequest(BaseModel):
    organization_id: str
    plan_id: str
    customer_email: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    checkout_url: Optional[str]
    session_id: str
    plan_id: str


class WebhookAck(BaseModel):
    status: Literal["applied", "ignored", "duplicate"]
    event_id: str
    event_type: str
    detail: Optional[str] = None


class CheckoutVerification(BaseModel):
    session_id: str
    # pending: Stripe has not confirmed the payment yet
    status: Literal["applied", "duplicate", "ignored", "pending"]
    organization_id: Optional[str] = None
    plan_id: Optional[str] = None
    detail: Optional[str] = None


# ---------------------------
# Cancellation
# ---------------------------
class CancellationRequest(BaseModel):
    at_period_end: bool = True


class CancellationResponse(BaseModel):
    organization_id: str
    subscription_ref: str
    at_period_end: bool
    status: Literal["requested"]
