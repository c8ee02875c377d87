# models/models.py
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

from core.timeutils import utcnow


# ============================================================
# ENUMS
# ============================================================
class PlanKind(str, Enum):
    FREE = "free"
    ONE_SHOT_CREDITS = "one_shot_credits"
    RECURRING = "recurring"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


FREE_PLAN_ID = "free"


# ============================================================
# ORGANIZATION (tenant)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(max_length=100)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)

    subscription: Optional["SubscriptionRecord"] = Relationship(
        back_populates="organization",
        sa_relationship_kwargs={"uselist": False},
    )


# ============================================================
# SUBSCRIPTION RECORD (one per organization)
# ============================================================
class SubscriptionRecord(SQLModel, table=True):
    __tablename__ = "subscription_record"

    organization_id: str = Field(foreign_key="organization.id", primary_key=True, max_length=64)
    plan_id: str = Field(default=FREE_PLAN_ID, max_length=50, index=True)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=20, index=True)

    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = Field(default=None, index=True)
    past_due_since: Optional[datetime] = None

    # None = unlimited; only meaningful for one-shot credit packs
    remaining_event_credits: Optional[int] = Field(default=None, ge=0)

    # Lifetime counters, never reset
    events_created_counter: int = Field(default=0, ge=0)
    invitations_sent_counter: int = Field(default=0, ge=0)

    # Payment provider correlation, reconciliation only
    external_customer_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    external_subscription_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    last_checkout_session_ref: Optional[str] = Field(default=None, max_length=255)
    # Set from the provider when the subscription will not renew
    cancel_at_period_end: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    organization: Optional[Organization] = Relationship(back_populates="subscription")

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value


# ============================================================
# WEBHOOK EVENT LEDGER (idempotency)
# ============================================================
class WebhookEventLedger(SQLModel, table=True):
    __tablename__ = "webhook_event_ledger"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)
    organization_id: Optional[str] = Field(default=None, max_length=64, index=True)

    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    # None while pending
    outcome: Optional[str] = Field(default=None, max_length=20, index=True)
    detail: Optional[str] = Field(default=None, max_length=1000)
    attempts: int = Field(default=0)

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (WebhookOutcome.APPLIED.value, WebhookOutcome.IGNORED.value)


# ============================================================
# RETIRED SUBSCRIPTION REFS (superseded by a later checkout)
# ============================================================
class RetiredSubscription(SQLModel, table=True):
    __tablename__ = "retired_subscription"

    subscription_ref: str = Field(primary_key=True, max_length=255)
    organization_id: str = Field(foreign_key="organization.id", index=True, max_length=64)
    retired_at: datetime = Field(default_factory=utcnow)


# ============================================================
# REMINDER DISPATCH LOG
# ============================================================
class ReminderDispatchLog(SQLModel, table=True):
    __tablename__ = "reminder_dispatch_log"
    __table_args__ = (
        UniqueConstraint("organization_id", "threshold_days", "dispatch_date", name="uq_reminder_per_day"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(foreign_key="organization.id", index=True, max_length=64)
    threshold_days: int
    dispatch_date: date = Field(index=True)
    sent_at: datetime = Field(default_factory=utcnow)


# ============================================================
# SCHEDULER LEASE (single sweeper cluster-wide)
# ============================================================
class SchedulerLease(SQLModel, table=True):
    __tablename__ = "scheduler_lease"

    name: str = Field(primary_key=True, max_length=100)
    holder: str = Field(max_length=255)
    expires_at: datetime
