import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from core.config import Settings
from core.database import SessionFactory, build_engine, session_factory
from core.locks import OrganizationLocks
from core.timeutils import Clock, utcnow
from services.cancellation_service import CancellationService
from services.checkout_service import CheckoutService
from services.email_service import EmailService
from services.leader_lease import LeaderLease
from services.notifications import NotificationDispatcher
from services.plan_catalog import PlanCatalog, build_catalog
from services.quota_service import QuotaService
from services.subscription_store import SubscriptionStore
from services.sweeper import SWEEPER_LEASE_NAME, SubscriptionSweeper
from services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    engine: Engine
    sessions: SessionFactory
    catalog: PlanCatalog
    locks: OrganizationLocks
    store: SubscriptionStore
    quota: QuotaService
    reconciler: WebhookReconciler
    sweeper: SubscriptionSweeper
    checkout: CheckoutService
    cancellation: CancellationService
    notifier: object

    def shutdown(self) -> None:
        shutdown = getattr(self.notifier, "shutdown", None)
        if shutdown is not None:
            shutdown()


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    notifier=None,
    clock: Clock = utcnow,
) -> BillingServices:
    """Wire every billing component once; the app keeps the result on ``app.state``."""
    engine = engine or build_engine(settings.DATABASE_URL)
    sessions = session_factory(engine)
    catalog = build_catalog(settings)
    locks = OrganizationLocks()
    if notifier is None:
        notifier = NotificationDispatcher(EmailService(settings).send_notification)

    store = SubscriptionStore(sessions, catalog, locks, clock=clock)
    quota = QuotaService(
        store,
        catalog,
        notifier=notifier,
        past_due_grace_days=settings.PAST_DUE_GRACE_DAYS,
        low_credits_threshold=settings.LOW_CREDITS_THRESHOLD,
        clock=clock,
    )
    cancellation = CancellationService(catalog, store, settings)
    reconciler = WebhookReconciler(
        store,
        catalog,
        settings.STRIPE_WEBHOOK_SECRET,
        notifier=notifier,
        clock=clock,
        subscription_canceller=cancellation.cancel_superseded,
    )
    sweeper = SubscriptionSweeper(
        store,
        catalog,
        notifier=notifier,
        lease=LeaderLease(sessions, SWEEPER_LEASE_NAME, ttl_seconds=settings.SWEEPER_LEASE_SECONDS, clock=clock),
        reminder_thresholds=settings.REMINDER_THRESHOLD_DAYS,
        renewal_grace_days=settings.RECURRING_RENEWAL_GRACE_DAYS,
        clock=clock,
    )
    checkout = CheckoutService(catalog, store, settings, reconciler=reconciler)

    logger.info("✅ Billing services ready (catalog %s, %s plans)", catalog.version, len(catalog.list_plans()))
    return BillingServices(
        settings=settings,
        engine=engine,
        sessions=sessions,
        catalog=catalog,
        locks=locks,
        store=store,
        quota=quota,
        reconciler=reconciler,
        sweeper=sweeper,
        checkout=checkout,
        cancellation=cancellation,
        notifier=notifier,
    )
