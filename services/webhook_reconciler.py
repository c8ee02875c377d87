"""
Webhook Reconciler

Applies Stripe webhook events to SubscriptionRecords. Stripe delivers
at-least-once, in any order, sometimes late, so every event goes through:

1. signature verification on the raw body (nothing is parsed before it);
2. the WebhookEventLedger, keyed by Stripe's event id;
3. one transaction, under the organization lock, that applies the state
   transition and marks the ledger row applied. A redelivery that finds a
   terminal ledger row is a no-op success.

Failures mark the row failed and surface as ``TransientDependencyFailure`` so
the endpoint answers 5xx and Stripe redelivers.

A paid checkout session is applied at most once whichever way it arrives
(webhook or the success-page verification): both paths also record a
``checkout_session:<id>`` ledger row.

Subscription events (invoices, updates, deletion) only touch a record whose
current plan is recurring and bound to that subscription. Events from a
subscription a later checkout replaced are ignored.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import stripe
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.errors import (
    BillingError,
    InvalidSignature,
    InvalidTransition,
    MalformedEvent,
    TransientDependencyFailure,
)
from core.timeutils import Clock, from_timestamp, utcnow
from models.models import SubscriptionRecord, SubscriptionStatus, WebhookEventLedger, WebhookOutcome
from services.notifications import Notification, NotificationKind, build_notification
from services.plan_catalog import PlanCatalog, PlanDefinition
from services.subscription_store import CheckoutRefs, SubscriptionStore

logger = logging.getLogger(__name__)

PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")
# Reached only through customer.subscription.deleted
TERMINAL_SUBSCRIPTION_STATUSES = ("canceled", "incomplete_expired")

Mutation = Callable[[Session, SubscriptionRecord, Any], Optional[Notification]]
Handler = Callable[[str, str, Dict[str, Any]], "WebhookResult"]


@dataclass
class WebhookResult:
    status: str  # "applied" | "ignored" | "duplicate"
    event_id: str
    event_type: str
    organization_id: Optional[str] = None
    detail: Optional[str] = None


class IgnoreEvent(Exception):
    """The event is understood but has nothing to apply."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SubscriptionNotYetKnown(TransientDependencyFailure):
    """The event references a subscription no checkout has linked yet."""


def checkout_session_key(session_id: str) -> str:
    return f"checkout_session:{session_id}"


def _ref(value: Any) -> Optional[str]:
    """Stripe sends either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Billing period covered by the invoice lines, if Stripe sent one."""
    starts, ends = [], []
    for line in ((invoice.get("lines") or {}).get("data") or []):
        period = line.get("period") or {}
        if period.get("start"):
            starts.append(period["start"])
        if period.get("end"):
            ends.append(period["end"])
    return (
        from_timestamp(min(starts)) if starts else None,
        from_timestamp(max(ends)) if ends else None,
    )


def _subscription_items(subscription: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (subscription.get("items") or {}).get("data") or []


def _subscription_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    # Older API versions carry it on the subscription, newer ones on each item
    value = subscription.get("current_period_end")
    if value is None:
        ends = [item["current_period_end"] for item in _subscription_items(subscription) if item.get("current_period_end")]
        value = max(ends) if ends else None
    return from_timestamp(value)


class WebhookReconciler:
    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        webhook_secret: Optional[str],
        notifier=None,
        clock: Clock = utcnow,
        tolerance_seconds: int = 300,
        subscription_canceller: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.webhook_secret = webhook_secret
        self.notifier = notifier
        self.clock = clock
        self.tolerance_seconds = tolerance_seconds
        self.subscription_canceller = subscription_canceller
        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.paid": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }

    # ============================================================
    # Entry points
    # ============================================================
    def handle_external_event(self, raw_payload: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.verify_and_parse(raw_payload, signature)
        event_id, event_type = event["id"], event["type"]
        logger.info("✅ Webhook received: %s (%s)", event_type, event_id)
        return self._process(event_id, event_type, event["data"]["object"], self._handlers.get(event_type))

    def apply_checkout_session(self, session_data: Dict[str, Any]) -> WebhookResult:
        """
        Apply a checkout session fetched from Stripe by the success page.

        Shares the ledger and the checkout transition with the webhook, so
        whichever path lands second is a duplicate. An unpaid session leaves
        the ledger open for the webhook to complete later.
        """
        session_id = session_data.get("id")
        if not session_id:
            raise MalformedEvent("Checkout session id missing")
        return self._process(
            checkout_session_key(session_id),
            "checkout.session.verified",
            session_data,
            self._handle_checkout_completed,
            record_ignored=False,
        )

    def _process(
        self,
        event_id: str,
        event_type: str,
        data_object: Dict[str, Any],
        handler: Optional[Handler],
        record_ignored: bool = True,
    ) -> WebhookResult:
        ledger = self._open_ledger(event_id, event_type)
        if ledger.is_terminal:
            logger.info("🔁 Duplicate delivery of %s ignored (outcome=%s)", event_id, ledger.outcome)
            return WebhookResult("duplicate", event_id, event_type, ledger.organization_id, ledger.outcome)

        if handler is None:
            self._close_ledger(event_id, WebhookOutcome.IGNORED, "unhandled event type")
            logger.info("ℹ️ Unhandled event type: %s", event_type)
            return WebhookResult("ignored", event_id, event_type, detail="unhandled event type")

        try:
            return handler(event_id, event_type, data_object)
        except IgnoreEvent as exc:
            if record_ignored:
                self._close_ledger(event_id, WebhookOutcome.IGNORED, exc.reason)
            logger.info("ℹ️ Event %s ignored: %s", event_id, exc.reason)
            return WebhookResult("ignored", event_id, event_type, detail=exc.reason)
        except TransientDependencyFailure as exc:
            self._fail_ledger(event_id, exc.message)
            raise
        except BillingError as exc:
            # Unknown organization or plan: keep it retryable until it is fixed
            self._fail_ledger(event_id, exc.message)
            logger.error("❌ Event %s (%s) failed: %s", event_id, event_type, exc.message)
            raise TransientDependencyFailure(f"Event {event_id} could not be applied: {exc.message}") from exc
        except Exception as exc:
            logger.exception("❌ Error processing webhook event %s (%s)", event_id, event_type)
            self._fail_ledger(event_id, str(exc))
            raise TransientDependencyFailure(f"Error processing event {event_id}") from exc

    # ============================================================
    # Verification
    # ============================================================
    def verify_and_parse(self, raw_payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
            raise TransientDependencyFailure("Webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")

        try:
            payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        except UnicodeDecodeError:
            raise MalformedEvent("Webhook body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.tolerance_seconds)
        except stripe.SignatureVerificationError as e:
            logger.warning("❌ Invalid webhook signature: %s", e)
            raise InvalidSignature("Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise MalformedEvent("Invalid payload")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise MalformedEvent("Event id or type missing")
        data_object = (event.get("data") or {}).get("object")
        if not isinstance(data_object, dict):
            raise MalformedEvent("Event data.object missing")
        return event

    # ============================================================
    # Ledger
    # ============================================================
    @staticmethod
    def _ledger_row(session: Session, event_id: str, for_update: bool = False) -> Optional[WebhookEventLedger]:
        statement = select(WebhookEventLedger).where(WebhookEventLedger.external_event_id == event_id)
        if for_update:
            statement = statement.with_for_update()
        return session.exec(statement).first()

    def _open_ledger(self, event_id: str, event_type: str) -> WebhookEventLedger:
        with self.store.session_factory() as session:
            row = self._ledger_row(session, event_id)
            if row is not None:
                return row
            row = WebhookEventLedger(external_event_id=event_id, event_type=event_type, received_at=self.clock())
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent delivery inserted it first
                session.rollback()
                return self._ledger_row(session, event_id)
            session.refresh(row)
            return row

    def _close_ledger(
        self,
        event_id: str,
        outcome: WebhookOutcome,
        detail: Optional[str] = None,
        organization_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> None:
        def _mark(active: Session) -> None:
            row = self._ledger_row(active, event_id, for_update=True)
            if row is None or row.is_terminal:
                return
            row.outcome = outcome.value
            row.detail = detail[:1000] if detail else None
            row.processed_at = self.clock()
            row.attempts += 1
            if organization_id:
                row.organization_id = organization_id
            active.add(row)
            active.commit()

        if session is not None:
            _mark(session)
            return
        with self.store.session_factory() as own_session:
            _mark(own_session)

    def _fail_ledger(self, event_id: str, detail: str) -> None:
        try:
            self._close_ledger(event_id, WebhookOutcome.FAILED, detail)
        except Exception:
            logger.exception("❌ Could not mark webhook event %s as failed", event_id)

    # ============================================================
    # Apply (one transaction per event, under the organization lock)
    # ============================================================
    def _apply(
        self,
        event_id: str,
        event_type: str,
        organization_id: str,
        mutate: Mutation,
        dedupe_key: Optional[str] = None,
    ) -> WebhookResult:
        notification = None
        with self.store.locked(organization_id) as (session, record):
            ledger = self._ledger_row(session, event_id, for_update=True)
            if ledger is not None and ledger.is_terminal:
                return WebhookResult("duplicate", event_id, event_type, organization_id, ledger.outcome)

            marker = None
            if dedupe_key and dedupe_key != event_id:
                marker = self._ledger_row(session, dedupe_key, for_update=True)
                if marker is not None and marker.outcome == WebhookOutcome.APPLIED.value:
                    detail = f"{dedupe_key} already applied"
                    self._close_ledger(event_id, WebhookOutcome.IGNORED, detail, organization_id, session=session)
                    logger.info("🔁 %s (%s) skipped: %s", event_type, event_id, detail)
                    return WebhookResult("duplicate", event_id, event_type, organization_id, detail)

            now = self.clock()
            try:
                notification = mutate(session, record, now)
            except (InvalidTransition, IgnoreEvent) as exc:
                session.rollback()
                reason = exc.message if isinstance(exc, InvalidTransition) else exc.reason
                self._close_ledger(event_id, WebhookOutcome.IGNORED, reason, organization_id, session=session)
                logger.info("ℹ️ Event %s ignored: %s", event_id, reason)
                return WebhookResult("ignored", event_id, event_type, organization_id, reason)

            session.add(record)
            applied_rows = [ledger]
            if dedupe_key and dedupe_key != event_id:
                applied_rows.append(
                    marker or WebhookEventLedger(external_event_id=dedupe_key, event_type="checkout.session", received_at=now)
                )
            for row in applied_rows:
                if row is None:
                    continue
                row.outcome = WebhookOutcome.APPLIED.value
                row.processed_at = now
                row.organization_id = organization_id
                row.detail = None
                row.attempts += 1
                session.add(row)
            session.commit()
            logger.info(
                "✅ %s applied to org %s (plan=%s, status=%s)",
                event_type, organization_id, record.plan_id, record.status,
            )

        if notification and self.notifier:
            self.notifier.dispatch(notification)
        return WebhookResult("applied", event_id, event_type, organization_id)

    def _organization_for_subscription(self, subscription_ref: str) -> str:
        organization_id = self.store.find_by_subscription_ref(subscription_ref)
        if organization_id is None:
            # Usually the checkout event has not been processed yet
            raise SubscriptionNotYetKnown(f"No organization linked to subscription {subscription_ref} yet")
        return organization_id

    def _require_current_subscription(self, record: SubscriptionRecord, subscription_ref: str) -> PlanDefinition:
        if record.external_subscription_ref != subscription_ref:
            raise IgnoreEvent(f"subscription {subscription_ref} is not the organization's current subscription")
        plan = self.catalog.get_plan(record.plan_id)
        if not plan.is_recurring:
            raise IgnoreEvent(f"org {record.organization_id} is no longer on a recurring plan")
        return plan

    def _cancel_superseded(self, subscription_ref: str) -> None:
        if self.subscription_canceller is None:
            return
        try:
            self.subscription_canceller(subscription_ref)
        except Exception:
            # The retired ref keeps its later events ignored either way
            logger.exception("❌ Could not cancel superseded subscription %s", subscription_ref)

    # ============================================================
    # Handlers
    # ============================================================
    def _handle_checkout_completed(self, event_id: str, event_type: str, session_data: Dict[str, Any]) -> WebhookResult:
        metadata = session_data.get("metadata") or {}
        organization_id = metadata.get("organizationId")
        plan_id = metadata.get("planId")
        if not organization_id or not plan_id:
            raise IgnoreEvent("checkout session without organizationId/planId metadata")

        payment_status = session_data.get("payment_status", "paid")
        if payment_status not in PAID_CHECKOUT_STATUSES:
            raise IgnoreEvent(f"checkout session not paid (payment_status={payment_status})")

        plan = self.catalog.get_plan(plan_id)
        refs = CheckoutRefs(
            session_ref=session_data.get("id"),
            customer_ref=_ref(session_data.get("customer")),
            subscription_ref=_ref(session_data.get("subscription")),
        )
        superseded: List[str] = []

        def mutate(session: Session, record: SubscriptionRecord, now) -> Notification:
            previous_ref = record.external_subscription_ref
            was_live = record.status != SubscriptionStatus.CANCELED.value
            self.store.apply_checkout(record, plan, now, refs)
            if previous_ref and previous_ref != record.external_subscription_ref:
                self.store.retire_subscription_ref(session, organization_id, previous_ref, now)
                if was_live:
                    superseded.append(previous_ref)
            return build_notification(
                session, NotificationKind.PAYMENT_CONFIRMATION, organization_id, plan_name=plan.name, price=plan.price
            )

        dedupe_key = checkout_session_key(refs.session_ref) if refs.session_ref else None
        result = self._apply(event_id, event_type, organization_id, mutate, dedupe_key=dedupe_key)
        if result.status == "applied":
            for subscription_ref in superseded:
                logger.info("🧾 Org %s replaced subscription %s, canceling it at Stripe", organization_id, subscription_ref)
                self._cancel_superseded(subscription_ref)
        return result

    def _handle_payment_succeeded(self, event_id: str, event_type: str, invoice: Dict[str, Any]) -> WebhookResult:
        subscription_ref = _invoice_subscription(invoice)
        if not subscription_ref:
            raise IgnoreEvent("invoice not attached to a subscription")
        if invoice.get("billing_reason") == "subscription_create":
            raise IgnoreEvent("first invoice of a subscription is covered by checkout completion")
        organization_id = self._organization_for_subscription(subscription_ref)
        period_start, period_end = _invoice_period(invoice)

        def mutate(session: Session, record: SubscriptionRecord, now) -> Optional[Notification]:
            plan = self._require_current_subscription(record, subscription_ref)
            was_past_due = record.status == SubscriptionStatus.PAST_DUE.value
            self.store.apply_renewal(record, now, period_start=period_start, period_end=period_end)
            if was_past_due:
                logger.info("💳 Org %s recovered from past due", organization_id)
            return build_notification(
                session, NotificationKind.PAYMENT_CONFIRMATION, organization_id, plan_name=plan.name, price=plan.price
            )

        return self._apply(event_id, event_type, organization_id, mutate)

    def _handle_payment_failed(self, event_id: str, event_type: str, invoice: Dict[str, Any]) -> WebhookResult:
        subscription_ref = _invoice_subscription(invoice)
        if not subscription_ref:
            raise IgnoreEvent("invoice not attached to a subscription")
        organization_id = self._organization_for_subscription(subscription_ref)

        def mutate(session: Session, record: SubscriptionRecord, now) -> Notification:
            self._require_current_subscription(record, subscription_ref)
            self.store.apply_payment_failed(record, now)
            return build_notification(session, NotificationKind.PAYMENT_FAILED, organization_id)

        return self._apply(event_id, event_type, organization_id, mutate)

    def _plan_for_subscription(self, subscription: Dict[str, Any]) -> Optional[PlanDefinition]:
        for item in _subscription_items(subscription):
            price_id = _ref(item.get("price"))
            plan = self.catalog.plan_for_stripe_price(price_id) if price_id else None
            if plan is not None:
                return plan
        return None

    def _handle_subscription_updated(self, event_id: str, event_type: str, subscription: Dict[str, Any]) -> WebhookResult:
        subscription_ref = _ref(subscription.get("id"))
        if not subscription_ref:
            raise IgnoreEvent("subscription object without id")
        if subscription.get("status") in TERMINAL_SUBSCRIPTION_STATUSES:
            raise IgnoreEvent(f"subscription status {subscription.get('status')} is applied on deletion")
        organization_id = self._organization_for_subscription(subscription_ref)
        new_plan = self._plan_for_subscription(subscription)
        period_end = _subscription_period_end(subscription)
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end") or subscription.get("cancel_at"))

        def mutate(session: Session, record: SubscriptionRecord, now) -> None:
            current = self._require_current_subscription(record, subscription_ref)
            self.store.apply_subscription_update(
                record,
                new_plan or current,
                now,
                period_end=period_end,
                cancel_at_period_end=cancel_at_period_end,
            )
            return None

        return self._apply(event_id, event_type, organization_id, mutate)

    def _handle_subscription_deleted(self, event_id: str, event_type: str, subscription: Dict[str, Any]) -> WebhookResult:
        subscription_ref = _ref(subscription.get("id"))
        if not subscription_ref:
            raise IgnoreEvent("subscription object without id")
        organization_id = self._organization_for_subscription(subscription_ref)

        def mutate(session: Session, record: SubscriptionRecord, now) -> Notification:
            self._require_current_subscription(record, subscription_ref)
            self.store.apply_cancellation(record, now)
            return build_notification(session, NotificationKind.CANCELED, organization_id)

        return self._apply(event_id, event_type, organization_id, mutate)
