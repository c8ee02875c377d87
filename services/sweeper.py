"""
Expiration & Reminder Sweeper

Periodic job, run by exactly one process at a time (``LeaderLease``):

- expiration pass: active one-shot packs whose validity has ended are moved
  back to the Free plan. Recurring plans are renewed or canceled by Stripe
  events; the sweeper only downgrades one whose renewal is more than the
  grace window overdue (a lost webhook);
- reminder pass: active paid records whose remaining days match one of the
  configured thresholds get one reminder per (organization, threshold, day).

Each record is handled in its own transaction; one failure is logged and
counted, and the pass continues with the next record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.timeutils import Clock, days_until, utcnow
from models.models import ReminderDispatchLog, SubscriptionRecord, SubscriptionStatus
from services.leader_lease import LeaderLease
from services.notifications import NotificationKind, build_notification
from services.plan_catalog import PlanCatalog, PlanDefinition
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

SWEEPER_LEASE_NAME = "subscription-sweeper"


@dataclass
class SweepReport:
    expired: int = 0
    reminders_sent: int = 0
    errors: int = 0
    # True when another process held the lease
    skipped: bool = False


class SubscriptionSweeper:
    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        notifier=None,
        lease: Optional[LeaderLease] = None,
        reminder_thresholds: Sequence[int] = (7, 3, 1),
        renewal_grace_days: int = 7,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.lease = lease
        self.reminder_thresholds = set(reminder_thresholds)
        self.renewal_grace = timedelta(days=renewal_grace_days)
        self.clock = clock

    def run_once(self) -> SweepReport:
        if self.lease is not None and not self.lease.acquire():
            logger.info("⏭️ Sweep skipped, another instance holds the lease")
            return SweepReport(skipped=True)

        report = SweepReport()
        try:
            self.expiration_pass(report)
            self.reminder_pass(report)
        finally:
            if self.lease is not None:
                self.lease.release()

        logger.info(
            "🧹 Sweep done: %s expired, %s reminders, %s errors",
            report.expired, report.reminders_sent, report.errors,
        )
        return report

    def _paid_plan_ids(self) -> List[str]:
        return [plan.id for plan in self.catalog.list_plans() if not plan.is_free]

    def _active_paid_query(self):
        return select(SubscriptionRecord).where(
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.plan_id.in_(self._paid_plan_ids()),
            SubscriptionRecord.period_end.is_not(None),
        )

    # ============================================================
    # Expiration
    # ============================================================
    def _lapsed(self, record: SubscriptionRecord, plan: PlanDefinition, now: datetime) -> bool:
        if plan.is_free or record.period_end is None:
            return False
        deadline = record.period_end + self.renewal_grace if plan.is_recurring else record.period_end
        return deadline < now

    def expiration_pass(self, report: SweepReport) -> None:
        now = self.clock()
        with self.store.session_factory() as session:
            organization_ids = [
                record.organization_id
                for record in session.exec(self._active_paid_query().where(SubscriptionRecord.period_end < now))
                if self._lapsed(record, self.catalog.get_plan(record.plan_id), now)
            ]

        for organization_id in organization_ids:
            try:
                if self._expire_one(organization_id, now):
                    report.expired += 1
            except Exception:
                report.errors += 1
                logger.exception("❌ Could not expire subscription of org %s", organization_id)

    def _expire_one(self, organization_id: str, now) -> bool:
        with self.store.locked(organization_id) as (session, record):
            # Re-checked under the lock: a renewal may have landed since the scan
            plan = self.catalog.get_plan(record.plan_id)
            if not record.is_active or not self._lapsed(record, plan, now):
                return False
            if plan.is_recurring:
                logger.warning(
                    "⚠️ Org %s: no renewal for %s since %s, downgrading", organization_id, plan.id, record.period_end
                )

            self.store.apply_expiration(record, now)
            session.add(record)
            notification = build_notification(session, NotificationKind.EXPIRED, organization_id, plan_name=plan.name)
            session.commit()

        logger.info("⌛ Org %s: %s expired, moved to the free plan", organization_id, plan.id)
        if self.notifier:
            self.notifier.dispatch(notification)
        return True

    # ============================================================
    # Reminders
    # ============================================================
    def reminder_pass(self, report: SweepReport) -> None:
        now = self.clock()
        with self.store.session_factory() as session:
            due = []
            for record in session.exec(self._active_paid_query().where(SubscriptionRecord.period_end > now)):
                days_left = days_until(record.period_end, now)
                if days_left in self.reminder_thresholds:
                    due.append((record.organization_id, record.plan_id, record.period_end, days_left))

        for organization_id, plan_id, period_end, days_left in due:
            try:
                if self._remind_one(organization_id, plan_id, period_end, days_left, now):
                    report.reminders_sent += 1
            except Exception:
                report.errors += 1
                logger.exception("❌ Could not send renewal reminder to org %s", organization_id)

    def _remind_one(self, organization_id: str, plan_id: str, period_end, days_left: int, now) -> bool:
        with self.store.session_factory() as session:
            # The unique (org, threshold, day) row is claimed before anything is sent
            session.add(
                ReminderDispatchLog(
                    organization_id=organization_id,
                    threshold_days=days_left,
                    dispatch_date=now.date(),
                    sent_at=now,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Reminder J-%s already sent today to org %s", days_left, organization_id)
                return False

            notification = build_notification(
                session,
                NotificationKind.RENEWAL_REMINDER,
                organization_id,
                days_left=days_left,
                plan_name=self.catalog.get_plan(plan_id).name,
                period_end=period_end.isoformat(),
            )

        logger.info("🔔 Reminder J-%s queued for org %s", days_left, organization_id)
        if self.notifier:
            self.notifier.dispatch(notification)
        return True
