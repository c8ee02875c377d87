"""
Subscription Record Store

Owns the per-organization SubscriptionRecord rows and the state machine that
moves them between ``active``, ``past_due`` and ``canceled``. Request handlers
never write records directly: the quota service, the webhook reconciler and
the sweeper open a locked unit of work here and apply one of the ``apply_*``
transitions inside it.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.database import SessionFactory
from core.errors import InvalidTransition, OrganizationAlreadyExists, OrganizationNotFound
from core.locks import OrganizationLocks
from core.timeutils import Clock, add_months, utcnow
from models.models import Organization, RetiredSubscription, SubscriptionRecord, SubscriptionStatus
from services.plan_catalog import PlanCatalog, PlanDefinition

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    SUBSCRIPTION_UPDATED = "subscription_updated"


ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
CANCELED = SubscriptionStatus.CANCELED

# (current status, trigger) -> next status. Anything missing is rejected.
TRANSITIONS: Dict[Tuple[SubscriptionStatus, Trigger], SubscriptionStatus] = {
    (ACTIVE, Trigger.CHECKOUT_COMPLETED): ACTIVE,
    (PAST_DUE, Trigger.CHECKOUT_COMPLETED): ACTIVE,
    (CANCELED, Trigger.CHECKOUT_COMPLETED): ACTIVE,
    (ACTIVE, Trigger.PAYMENT_SUCCEEDED): ACTIVE,
    (PAST_DUE, Trigger.PAYMENT_SUCCEEDED): ACTIVE,
    (ACTIVE, Trigger.PAYMENT_FAILED): PAST_DUE,
    (ACTIVE, Trigger.CANCELED): CANCELED,
    (PAST_DUE, Trigger.CANCELED): CANCELED,
    (ACTIVE, Trigger.EXPIRED): ACTIVE,
    (ACTIVE, Trigger.SUBSCRIPTION_UPDATED): ACTIVE,
    (PAST_DUE, Trigger.SUBSCRIPTION_UPDATED): PAST_DUE,
}


def next_status(record: SubscriptionRecord, trigger: Trigger) -> SubscriptionStatus:
    current = SubscriptionStatus(record.status)
    target = TRANSITIONS.get((current, trigger))
    if target is None:
        logger.warning(
            "🚫 Invariant violation: %s not allowed from %s (org=%s, plan=%s)",
            trigger.value, current.value, record.organization_id, record.plan_id,
        )
        raise InvalidTransition(record.organization_id, current.value, trigger.value)
    return target


def _reject(record: SubscriptionRecord, trigger: Trigger, why: str) -> InvalidTransition:
    logger.warning(
        "🚫 Invariant violation: %s rejected for org=%s on plan %s: %s",
        trigger.value, record.organization_id, record.plan_id, why,
    )
    return InvalidTransition(record.organization_id, record.status, trigger.value)


@dataclass
class CheckoutRefs:
    session_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


class SubscriptionStore:
    def __init__(
        self,
        session_factory: SessionFactory,
        catalog: PlanCatalog,
        locks: OrganizationLocks,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.locks = locks
        self.clock = clock

    # ============================================================
    # Registration & reads
    # ============================================================
    def register_organization(
        self,
        organization_id: str,
        name: str,
        contact_email: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Create the organization and its Free subscription in one transaction."""
        now = self.clock()
        with self.session_factory() as session:
            if session.get(Organization, organization_id) is not None:
                raise OrganizationAlreadyExists(organization_id)

            organization = Organization(id=organization_id, name=name, contact_email=contact_email, created_at=now)
            record = SubscriptionRecord(
                organization_id=organization_id,
                plan_id=self.catalog.free_plan().id,
                status=SubscriptionStatus.ACTIVE.value,
                period_start=now,
                created_at=now,
                updated_at=now,
            )
            session.add(organization)
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise OrganizationAlreadyExists(organization_id)
            session.refresh(record)
            logger.info("🏢 Registered organization %s on the %s plan", organization_id, record.plan_id)
            return record

    def get_record(self, organization_id: str) -> SubscriptionRecord:
        with self.session_factory() as session:
            record = session.get(SubscriptionRecord, organization_id)
            if record is None:
                raise OrganizationNotFound(organization_id)
            return record

    def get_organization(self, organization_id: str) -> Organization:
        with self.session_factory() as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise OrganizationNotFound(organization_id)
            return organization

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[str]:
        """Organization owning ``subscription_ref``, current or superseded."""
        with self.session_factory() as session:
            organization_id = session.exec(
                select(SubscriptionRecord.organization_id).where(
                    SubscriptionRecord.external_subscription_ref == subscription_ref
                )
            ).first()
            if organization_id is not None:
                return organization_id
            return session.exec(
                select(RetiredSubscription.organization_id).where(
                    RetiredSubscription.subscription_ref == subscription_ref
                )
            ).first()

    def retire_subscription_ref(self, session: Session, organization_id: str, subscription_ref: str, now: datetime) -> None:
        """Remember a subscription replaced by a later checkout, so its late events still resolve."""
        if session.get(RetiredSubscription, subscription_ref) is None:
            session.add(RetiredSubscription(subscription_ref=subscription_ref, organization_id=organization_id, retired_at=now))
            logger.info("🗄️ Subscription %s of org %s retired", subscription_ref, organization_id)

    # ============================================================
    # Locked unit of work
    # ============================================================
    @contextmanager
    def locked(self, organization_id: str) -> Iterator[Tuple[Session, SubscriptionRecord]]:
        """
        Serialize a read-modify-write on one organization's record.

        Holds the in-process organization lock and a row lock
        (``SELECT ... FOR UPDATE``, a no-op on SQLite) for the life of the
        session. The caller commits; leaving the block without a commit
        rolls back.
        """
        with self.locks.hold(organization_id):
            with self.session_factory() as session:
                record = session.exec(
                    select(SubscriptionRecord)
                    .where(SubscriptionRecord.organization_id == organization_id)
                    .with_for_update()
                ).first()
                if record is None:
                    raise OrganizationNotFound(organization_id)
                yield session, record

    # ============================================================
    # Transitions
    # ============================================================
    def apply_checkout(
        self,
        record: SubscriptionRecord,
        plan: PlanDefinition,
        now: datetime,
        refs: CheckoutRefs,
    ) -> SubscriptionRecord:
        if plan.is_free:
            raise _reject(record, Trigger.CHECKOUT_COMPLETED, "the free plan is never bought")
        record.status = next_status(record, Trigger.CHECKOUT_COMPLETED).value

        if plan.is_one_shot:
            pack_end = add_months(now, plan.validity_months or 12)
            if self._has_valid_pack(record, now):
                record.remaining_event_credits = (record.remaining_event_credits or 0) + (plan.event_credits_granted or 0)
                record.period_end = max(record.period_end, pack_end)
                logger.info("➕ Stacked %s credits onto the valid pack of org %s", plan.event_credits_granted, record.organization_id)
            else:
                record.remaining_event_credits = plan.event_credits_granted
                record.period_start = now
                record.period_end = pack_end
        else:
            record.remaining_event_credits = None
            record.period_start = now
            record.period_end = add_months(now, plan.billing_interval_months or 1)

        record.plan_id = plan.id
        record.past_due_since = None
        if refs.customer_ref:
            record.external_customer_ref = refs.customer_ref
        # A pack replaces any recurring subscription; only recurring plans keep a ref
        record.external_subscription_ref = refs.subscription_ref if plan.is_recurring else None
        record.cancel_at_period_end = False
        record.last_checkout_session_ref = refs.session_ref
        record.updated_at = now
        return record

    def _has_valid_pack(self, record: SubscriptionRecord, now: datetime) -> bool:
        if record.status != SubscriptionStatus.ACTIVE.value or record.remaining_event_credits is None:
            return False
        if record.plan_id not in self.catalog or not self.catalog.get_plan(record.plan_id).is_one_shot:
            return False
        return record.period_end is not None and record.period_end > now

    def apply_renewal(
        self,
        record: SubscriptionRecord,
        now: datetime,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> SubscriptionRecord:
        """
        Extend the record's recurring plan after a paid renewal invoice.

        The provider's billing period wins when the invoice carries one;
        otherwise the period moves forward by one billing interval.
        """
        plan = self.catalog.get_plan(record.plan_id)
        if not plan.is_recurring:
            raise _reject(record, Trigger.PAYMENT_SUCCEEDED, "renewals only apply to recurring plans")
        record.status = next_status(record, Trigger.PAYMENT_SUCCEEDED).value

        if period_end is not None and period_end > now:
            base, new_end = period_start or record.period_end or now, period_end
        else:
            interval = plan.billing_interval_months or 1
            base = record.period_end or now
            new_end = add_months(base, interval)
            if new_end <= now:
                base, new_end = now, add_months(now, interval)

        record.period_start = base
        record.period_end = new_end
        record.remaining_event_credits = None
        record.past_due_since = None
        record.updated_at = now
        return record

    def apply_payment_failed(self, record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
        if not self.catalog.get_plan(record.plan_id).is_recurring:
            raise _reject(record, Trigger.PAYMENT_FAILED, "only recurring plans go past due")
        record.status = next_status(record, Trigger.PAYMENT_FAILED).value
        record.past_due_since = now
        record.updated_at = now
        return record

    def apply_subscription_update(
        self,
        record: SubscriptionRecord,
        plan: PlanDefinition,
        now: datetime,
        period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
    ) -> SubscriptionRecord:
        """Mirror a provider-side change (plan switch, period, pending cancellation) onto the record."""
        if not plan.is_recurring or not self.catalog.get_plan(record.plan_id).is_recurring:
            raise _reject(record, Trigger.SUBSCRIPTION_UPDATED, "only recurring subscriptions are updated")
        record.status = next_status(record, Trigger.SUBSCRIPTION_UPDATED).value
        if plan.id != record.plan_id:
            logger.info("🔀 Org %s switched from %s to %s", record.organization_id, record.plan_id, plan.id)
            record.plan_id = plan.id
        if period_end is not None:
            record.period_end = period_end
        record.cancel_at_period_end = cancel_at_period_end
        record.updated_at = now
        return record

    def apply_cancellation(self, record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
        if self.catalog.get_plan(record.plan_id).is_free:
            raise _reject(record, Trigger.CANCELED, "the free plan cannot be canceled")
        record.status = next_status(record, Trigger.CANCELED).value
        record.remaining_event_credits = 0
        record.period_end = min(record.period_end, now) if record.period_end else now
        record.past_due_since = None
        record.updated_at = now
        return record

    def apply_expiration(self, record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
        """Downgrade an expired paid plan to Free; lifetime counters are kept."""
        if self.catalog.get_plan(record.plan_id).is_free:
            raise _reject(record, Trigger.EXPIRED, "the free plan never expires")
        record.status = next_status(record, Trigger.EXPIRED).value
        record.plan_id = self.catalog.free_plan().id
        record.period_start = now
        record.period_end = None
        record.remaining_event_credits = None
        record.past_due_since = None
        record.cancel_at_period_end = False
        record.updated_at = now
        return record
