"""
Quota Service

Check-then-act pairs used by the route layer around quota-consuming actions:

    can_create_event / consume_event
    can_send_invitations / consume_invitations

``can_*`` only reads and returns a ``QuotaDecision``. ``consume_*`` must be
called once the event or invitations are durably stored; it re-evaluates
under the organization lock and applies a conditional UPDATE, so concurrent
consumers can never take more than the plan grants.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update

from core.errors import QuotaExceeded, SubscriptionNotActive
from core.timeutils import Clock, days_until, utcnow
from models.models import SubscriptionRecord, SubscriptionStatus
from schemas.billing_schema import QuotaDecision, UsageSummary
from services.notifications import NotificationKind, build_notification
from services.plan_catalog import PlanCatalog, PlanDefinition
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class QuotaService:
    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        notifier=None,
        past_due_grace_days: int = 0,
        low_credits_threshold: int = 2,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.past_due_grace = timedelta(days=past_due_grace_days)
        self.low_credits_threshold = low_credits_threshold
        self.clock = clock

    # ============================================================
    # Evaluation (pure, no writes)
    # ============================================================
    def _standing_denial(self, record: SubscriptionRecord, plan: PlanDefinition, now) -> Optional[QuotaDecision]:
        """Deny when the subscription itself is unusable, whatever the quota."""
        if record.status == SubscriptionStatus.CANCELED.value:
            return QuotaDecision(
                allowed=False,
                plan_id=plan.id,
                reason="Subscription canceled. Choose a plan to continue.",
                code="subscription_not_active",
                upgrade_to=self.catalog.upgrade_recommendation(plan.id),
            )
        if record.status == SubscriptionStatus.PAST_DUE.value:
            since = record.past_due_since or record.updated_at
            if not self.past_due_grace or now >= since + self.past_due_grace:
                return QuotaDecision(
                    allowed=False,
                    plan_id=plan.id,
                    reason="Payment past due. Update your payment method to continue.",
                    code="subscription_not_active",
                )
        if plan.is_one_shot and (record.period_end is None or now >= record.period_end):
            return QuotaDecision(
                allowed=False,
                plan_id=plan.id,
                reason="Event pack expired",
                remaining=0,
                code="subscription_not_active",
                upgrade_to=self.catalog.upgrade_recommendation(plan.id),
            )
        return None

    def _evaluate_events(self, record: SubscriptionRecord, plan: PlanDefinition, now) -> QuotaDecision:
        denial = self._standing_denial(record, plan, now)
        if denial:
            return denial

        if plan.is_one_shot and record.remaining_event_credits is not None:
            if record.remaining_event_credits <= 0:
                return QuotaDecision(
                    allowed=False,
                    plan_id=plan.id,
                    reason="No events left in your pack",
                    remaining=0,
                    code="quota_exceeded",
                    upgrade_to=self.catalog.upgrade_recommendation(plan.id),
                )
            return QuotaDecision(allowed=True, plan_id=plan.id, remaining=record.remaining_event_credits)

        if plan.event_cap is not None:
            used = record.events_created_counter
            if used >= plan.event_cap:
                return QuotaDecision(
                    allowed=False,
                    plan_id=plan.id,
                    reason=f"Free plan limit reached ({used}/{plan.event_cap})",
                    remaining=0,
                    code="quota_exceeded",
                    upgrade_to=self.catalog.upgrade_recommendation(plan.id),
                )
            return QuotaDecision(allowed=True, plan_id=plan.id, remaining=plan.event_cap - used)

        return QuotaDecision(allowed=True, plan_id=plan.id, remaining=None)

    def _evaluate_invitations(self, record: SubscriptionRecord, plan: PlanDefinition, count: int, now) -> QuotaDecision:
        denial = self._standing_denial(record, plan, now)
        if denial:
            return denial

        if plan.invitation_cap is None:
            return QuotaDecision(allowed=True, plan_id=plan.id, remaining=None)

        sent = record.invitations_sent_counter
        remaining = plan.invitation_cap - sent
        if remaining < count:
            return QuotaDecision(
                allowed=False,
                plan_id=plan.id,
                reason=f"Invitation limit reached ({sent}/{plan.invitation_cap})",
                remaining=max(0, remaining),
                code="quota_exceeded",
                upgrade_to=self.catalog.upgrade_recommendation(plan.id),
            )
        return QuotaDecision(allowed=True, plan_id=plan.id, remaining=remaining)

    def _raise_denial(self, decision: QuotaDecision, record: SubscriptionRecord):
        logger.info(
            "⛔ Quota denied for org %s on plan %s: %s", record.organization_id, record.plan_id, decision.reason
        )
        if decision.code == "subscription_not_active":
            raise SubscriptionNotActive(decision.reason, record.organization_id, record.status)
        raise QuotaExceeded(
            decision.reason,
            organization_id=record.organization_id,
            plan_id=record.plan_id,
            remaining=decision.remaining,
            upgrade_to=decision.upgrade_to,
        )

    @staticmethod
    def _check_count(count: int) -> None:
        if count < 1:
            raise ValueError("count must be a positive number of invitations")

    # ============================================================
    # Checks
    # ============================================================
    def can_create_event(self, organization_id: str) -> QuotaDecision:
        record = self.store.get_record(organization_id)
        plan = self.catalog.get_plan(record.plan_id)
        return self._evaluate_events(record, plan, self.clock())

    def can_send_invitations(self, organization_id: str, count: int = 1) -> QuotaDecision:
        self._check_count(count)
        record = self.store.get_record(organization_id)
        plan = self.catalog.get_plan(record.plan_id)
        return self._evaluate_invitations(record, plan, count, self.clock())

    # ============================================================
    # Consumption
    # ============================================================
    def consume_event(self, organization_id: str) -> QuotaDecision:
        notification = None
        with self.store.locked(organization_id) as (session, record):
            now = self.clock()
            plan = self.catalog.get_plan(record.plan_id)
            decision = self._evaluate_events(record, plan, now)
            if not decision.allowed:
                self._raise_denial(decision, record)

            statement = update(SubscriptionRecord).where(SubscriptionRecord.organization_id == organization_id)
            values = {
                "events_created_counter": SubscriptionRecord.events_created_counter + 1,
                "updated_at": now,
            }
            if plan.is_one_shot and record.remaining_event_credits is not None:
                statement = statement.where(SubscriptionRecord.remaining_event_credits > 0)
                values["remaining_event_credits"] = SubscriptionRecord.remaining_event_credits - 1
            elif plan.event_cap is not None:
                statement = statement.where(SubscriptionRecord.events_created_counter < plan.event_cap)

            result = session.connection().execute(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                raise QuotaExceeded(
                    "Event quota exhausted",
                    organization_id=organization_id,
                    plan_id=plan.id,
                    remaining=0,
                    upgrade_to=self.catalog.upgrade_recommendation(plan.id),
                )
            session.commit()
            session.refresh(record)

            after = self._evaluate_events(record, plan, now)
            if (
                plan.is_one_shot
                and record.remaining_event_credits is not None
                and record.remaining_event_credits <= self.low_credits_threshold
            ):
                notification = build_notification(
                    session, NotificationKind.LOW_CREDITS, organization_id, remaining=record.remaining_event_credits
                )

        logger.info(
            "🎟️ Event consumed for org %s (plan=%s, remaining=%s)",
            organization_id, plan.id, "unlimited" if after.remaining is None else after.remaining,
        )
        if notification and self.notifier:
            self.notifier.dispatch(notification)
        return QuotaDecision(allowed=True, plan_id=plan.id, remaining=after.remaining)

    def consume_invitations(self, organization_id: str, count: int = 1) -> QuotaDecision:
        self._check_count(count)
        with self.store.locked(organization_id) as (session, record):
            now = self.clock()
            plan = self.catalog.get_plan(record.plan_id)
            decision = self._evaluate_invitations(record, plan, count, now)
            if not decision.allowed:
                self._raise_denial(decision, record)

            statement = update(SubscriptionRecord).where(SubscriptionRecord.organization_id == organization_id)
            if plan.invitation_cap is not None:
                statement = statement.where(SubscriptionRecord.invitations_sent_counter <= plan.invitation_cap - count)

            result = session.connection().execute(
                statement.values(
                    invitations_sent_counter=SubscriptionRecord.invitations_sent_counter + count,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise QuotaExceeded(
                    "Invitation quota exhausted",
                    organization_id=organization_id,
                    plan_id=plan.id,
                    remaining=0,
                    upgrade_to=self.catalog.upgrade_recommendation(plan.id),
                )
            session.commit()
            session.refresh(record)

        remaining = None if plan.invitation_cap is None else plan.invitation_cap - record.invitations_sent_counter
        logger.info("✉️ %s invitation(s) consumed for org %s (remaining=%s)", count, organization_id, remaining)
        return QuotaDecision(allowed=True, plan_id=plan.id, remaining=remaining)

    # ============================================================
    # Usage summary
    # ============================================================
    def get_usage(self, organization_id: str) -> UsageSummary:
        record = self.store.get_record(organization_id)
        plan = self.catalog.get_plan(record.plan_id)
        now = self.clock()

        if plan.is_one_shot:
            remaining_events = record.remaining_event_credits
        elif plan.event_cap is not None:
            remaining_events = max(0, plan.event_cap - record.events_created_counter)
        else:
            remaining_events = None

        remaining_invitations = (
            None if plan.invitation_cap is None else max(0, plan.invitation_cap - record.invitations_sent_counter)
        )
        return UsageSummary(
            organization_id=organization_id,
            plan_id=plan.id,
            plan_name=plan.name,
            plan_kind=plan.kind,
            status=SubscriptionStatus(record.status),
            period_start=record.period_start,
            period_end=record.period_end,
            days_until_expiry=days_until(record.period_end, now),
            events_created=record.events_created_counter,
            invitations_sent=record.invitations_sent_counter,
            remaining_events=remaining_events,
            remaining_invitations=remaining_invitations,
            cancel_at_period_end=record.cancel_at_period_end,
            can_create_event=self._evaluate_events(record, plan, now),
        )
