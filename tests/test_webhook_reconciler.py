import json
from datetime import datetime, timedelta

import pytest
import stripe
from sqlmodel import select

from conftest import WebhookDriver, event_payload, sign, unix
from core.errors import InvalidSignature, MalformedEvent, TransientDependencyFailure
from core.timeutils import add_months
from models.models import WebhookEventLedger
from services.container import build_services


def ledger_rows(billing):
    with billing.sessions() as session:
        return session.exec(select(WebhookEventLedger)).all()


# -------------------------
# Verification
# -------------------------
def test_bad_signature_changes_nothing(billing, org):
    payload = event_payload("evt_1", "checkout.session.completed", {
        "id": "cs_1", "payment_status": "paid", "metadata": {"organizationId": org, "planId": "pack10"},
    })
    with pytest.raises(InvalidSignature):
        billing.reconciler.handle_external_event(payload.encode(), sign(payload, secret="whsec_wrong"))
    with pytest.raises(InvalidSignature):
        billing.reconciler.handle_external_event(payload.encode(), None)

    assert billing.store.get_record(org).plan_id == "free"
    assert ledger_rows(billing) == []


def test_tampered_body_is_rejected(billing, org):
    payload = event_payload("evt_1", "checkout.session.completed", {"metadata": {"planId": "single"}})
    signature = sign(payload)
    tampered = payload.replace("single", "pack10")
    with pytest.raises(InvalidSignature):
        billing.reconciler.handle_external_event(tampered.encode(), signature)


def test_signed_but_malformed_event(billing):
    for body in ("not json", json.dumps({"type": "invoice.paid"}), json.dumps({"id": "evt_1", "type": "x", "data": {}})):
        with pytest.raises(MalformedEvent):
            billing.reconciler.handle_external_event(body.encode(), sign(body))


# -------------------------
# Checkout completion
# -------------------------
def test_pack10_purchase_grants_ten_credits(billing, org, webhooks, clock, notifier):
    result = webhooks.checkout_completed(org, "pack10")
    assert result.status == "applied"

    record = billing.store.get_record(org)
    assert record.plan_id == "pack10"
    assert record.status == "active"
    assert record.remaining_event_credits == 10
    assert record.period_start == clock.now
    assert record.period_end == add_months(clock.now, 12)
    assert record.external_customer_ref == f"cus_{org}"
    assert notifier.kinds() == ["payment_confirmation"]
    assert notifier.sent[0].recipient == "contact@club.fr"


def test_redelivered_event_is_applied_once(billing, org, webhooks, notifier):
    results = [webhooks.checkout_completed(org, "pack10", event_id="evt_dup") for _ in range(5)]

    assert [r.status for r in results] == ["applied"] + ["duplicate"] * 4
    assert billing.store.get_record(org).remaining_event_credits == 10
    rows = [row for row in ledger_rows(billing) if row.external_event_id == "evt_dup"]
    assert len(rows) == 1
    assert rows[0].outcome == "applied"
    assert rows[0].organization_id == org
    assert notifier.kinds() == ["payment_confirmation"]


def test_second_pack_stacks_onto_a_valid_one(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "single", session_id="cs_a")
    first_end = billing.store.get_record(org).period_end
    clock.advance(days=30)
    webhooks.checkout_completed(org, "pack10", session_id="cs_b")

    record = billing.store.get_record(org)
    assert record.remaining_event_credits == 11
    assert record.period_end == add_months(clock.now, 12)
    assert record.period_end > first_end


def test_pack_bought_after_expiry_starts_fresh(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pack10", session_id="cs_a")
    clock.advance(days=400)
    webhooks.checkout_completed(org, "single", session_id="cs_b")

    record = billing.store.get_record(org)
    assert record.remaining_event_credits == 1
    assert record.period_start == clock.now


def test_unpaid_checkout_is_ignored(billing, org, webhooks):
    result = webhooks.checkout_completed(org, "pack10", payment_status="unpaid")
    assert result.status == "ignored"
    assert billing.store.get_record(org).plan_id == "free"


def test_unknown_plan_fails_retryably(billing, org, webhooks):
    with pytest.raises(TransientDependencyFailure):
        webhooks.checkout_completed(org, "gold", event_id="evt_gold")
    assert ledger_rows(billing)[0].outcome == "failed"


def test_unhandled_event_type_is_ignored(billing, webhooks):
    result = webhooks.send("customer.created", {"id": "cus_1"})
    assert result.status == "ignored"
    assert ledger_rows(billing)[0].outcome == "ignored"


# -------------------------
# Recurring lifecycle
# -------------------------
def test_recurring_renewal_extends_period(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    first_end = billing.store.get_record(org).period_end
    assert first_end == add_months(clock.now, 1)

    first_invoice = webhooks.invoice("invoice.payment_succeeded", "sub_1", billing_reason="subscription_create")
    assert first_invoice.status == "ignored"
    assert billing.store.get_record(org).period_end == first_end

    clock.set(first_end)
    renewal = webhooks.invoice("invoice.payment_succeeded", "sub_1")
    assert renewal.status == "applied"
    record = billing.store.get_record(org)
    assert record.period_start == first_end
    assert record.period_end == add_months(first_end, 1)


def test_failed_payment_then_recovery(billing, org, webhooks, notifier):
    webhooks.checkout_completed(org, "pro-pme", subscription="sub_1")

    assert webhooks.invoice("invoice.payment_failed", "sub_1").status == "applied"
    record = billing.store.get_record(org)
    assert record.status == "past_due"
    assert record.past_due_since is not None

    assert webhooks.invoice("invoice.paid", "sub_1").status == "applied"
    record = billing.store.get_record(org)
    assert record.status == "active"
    assert record.past_due_since is None
    assert "payment_failed" in notifier.kinds()


def test_cancellation_and_later_events_are_ignored(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    assert webhooks.subscription_deleted("sub_1").status == "applied"
    record = billing.store.get_record(org)
    assert record.status == "canceled"
    assert record.period_end == clock.now

    late_failure = webhooks.invoice("invoice.payment_failed", "sub_1")
    assert late_failure.status == "ignored"
    assert billing.store.get_record(org).status == "canceled"

    # A new checkout reactivates a canceled organization
    webhooks.checkout_completed(org, "pro-club", subscription="sub_2", session_id="cs_new")
    assert billing.store.get_record(org).status == "active"


def test_event_for_unknown_subscription_is_retried_after_checkout(billing, org, webhooks):
    with pytest.raises(TransientDependencyFailure) as exc:
        webhooks.invoice("invoice.payment_failed", "sub_1", event_id="evt_early")
    assert exc.value.retryable is True
    row = ledger_rows(billing)[0]
    assert row.outcome == "failed"
    assert row.attempts == 1

    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    redelivered = webhooks.invoice("invoice.payment_failed", "sub_1", event_id="evt_early")
    assert redelivered.status == "applied"
    assert billing.store.get_record(org).status == "past_due"


# -------------------------
# Replaced subscriptions
# -------------------------
def test_pack_bought_over_a_subscription_survives_its_deletion(billing, org, webhooks, stripe_subscriptions):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1", session_id="cs_pro")
    webhooks.checkout_completed(org, "pack10", session_id="cs_pack")

    record = billing.store.get_record(org)
    assert record.external_subscription_ref is None
    assert stripe_subscriptions.canceled == ["sub_1"]

    result = webhooks.subscription_deleted("sub_1")
    assert result.status == "ignored"
    record = billing.store.get_record(org)
    assert record.status == "active"
    assert record.plan_id == "pack10"
    assert record.remaining_event_credits == 10


def test_invoice_from_a_replaced_subscription_changes_nothing(billing, org, webhooks):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1", session_id="cs_pro")
    webhooks.checkout_completed(org, "pack10", session_id="cs_pack")

    paid = webhooks.invoice(
        "invoice.paid",
        "sub_1",
        subscription_details={"metadata": {"organizationId": org, "planId": "pro-club"}},
    )
    failed = webhooks.invoice("invoice.payment_failed", "sub_1")

    assert paid.status == "ignored"
    assert failed.status == "ignored"
    record = billing.store.get_record(org)
    assert record.plan_id == "pack10"
    assert record.status == "active"
    assert record.remaining_event_credits == 10


def test_switching_subscriptions_retires_the_old_one(billing, org, webhooks, stripe_subscriptions):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1", session_id="cs_1")
    webhooks.checkout_completed(org, "pro-pme", subscription="sub_2", session_id="cs_2")
    assert stripe_subscriptions.canceled == ["sub_1"]

    assert webhooks.subscription_deleted("sub_1").status == "ignored"
    record = billing.store.get_record(org)
    assert record.plan_id == "pro-pme"
    assert record.status == "active"
    assert record.external_subscription_ref == "sub_2"


def test_failed_stripe_cancel_of_a_replaced_subscription_is_not_fatal(billing, org, webhooks, monkeypatch):
    def refuse(subscription_ref, **params):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Subscription, "cancel", refuse)
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1", session_id="cs_1")
    result = webhooks.checkout_completed(org, "pack10", session_id="cs_2")

    assert result.status == "applied"
    assert billing.store.get_record(org).plan_id == "pack10"


# -------------------------
# Late renewals
# -------------------------
def test_renewal_landing_after_period_end_keeps_the_plan(billing, org, webhooks, clock, notifier):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    first_end = billing.store.get_record(org).period_end

    clock.set(first_end + timedelta(minutes=5))
    assert billing.sweeper.run_once().expired == 0
    assert billing.store.get_record(org).plan_id == "pro-club"

    provider_end = datetime(2025, 3, 15, 12)
    renewal = webhooks.invoice(
        "invoice.paid",
        "sub_1",
        lines={"data": [{"period": {"start": unix(first_end), "end": unix(provider_end)}}]},
    )
    assert renewal.status == "applied"
    record = billing.store.get_record(org)
    assert record.plan_id == "pro-club"
    assert record.period_start == first_end
    assert record.period_end == provider_end
    assert "expired" not in notifier.kinds()


def test_renewal_after_the_grace_window_does_not_restore_free(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pro-entreprise", subscription="sub_1")
    end = billing.store.get_record(org).period_end
    clock.set(end + timedelta(days=billing.settings.RECURRING_RENEWAL_GRACE_DAYS, minutes=1))
    assert billing.sweeper.run_once().expired == 1

    late = webhooks.invoice("invoice.payment_succeeded", "sub_1")
    assert late.status == "ignored"
    assert billing.store.get_record(org).plan_id == "free"


# -------------------------
# customer.subscription.updated
# -------------------------
def test_subscription_update_records_pending_cancellation_and_period(billing, org, webhooks):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    provider_end = datetime(2025, 2, 20, 8)

    result = webhooks.subscription_updated(
        "sub_1",
        cancel_at_period_end=True,
        items={"data": [{"price": {"id": "price_unknown"}, "current_period_end": unix(provider_end)}]},
    )
    assert result.status == "applied"
    record = billing.store.get_record(org)
    assert record.plan_id == "pro-club"
    assert record.cancel_at_period_end is True
    assert record.period_end == provider_end
    assert record.status == "active"
    assert billing.quota.get_usage(org).cancel_at_period_end is True


def test_subscription_update_follows_a_price_change(settings, engine, notifier, clock):
    billing = build_services(
        settings.model_copy(update={"STRIPE_PRICE_PRO_PME": "price_pme"}), engine=engine, notifier=notifier, clock=clock
    )
    billing.store.register_organization("org-1", "Club de Voile")
    webhooks = WebhookDriver(billing.reconciler)
    webhooks.checkout_completed("org-1", "pro-club", subscription="sub_1")

    webhooks.subscription_updated("sub_1", current_period_end=unix(datetime(2025, 2, 28)), items={"data": [{"price": "price_pme"}]})

    record = billing.store.get_record("org-1")
    assert record.plan_id == "pro-pme"
    assert record.period_end == datetime(2025, 2, 28)
    assert record.cancel_at_period_end is False


def test_subscription_update_to_a_terminal_status_waits_for_deletion(billing, org, webhooks):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    assert webhooks.subscription_updated("sub_1", status="canceled").status == "ignored"
    assert billing.store.get_record(org).status == "active"

    webhooks.subscription_deleted("sub_1")
    assert webhooks.subscription_updated("sub_1", cancel_at_period_end=False).status == "ignored"
    assert billing.store.get_record(org).status == "canceled"


# -------------------------
# Success-page verification
# -------------------------
def paid_session(org, plan_id, session_id="cs_verify", payment_status="paid"):
    return {
        "id": session_id,
        "object": "checkout.session",
        "customer": f"cus_{org}",
        "subscription": None,
        "payment_status": payment_status,
        "metadata": {"organizationId": org, "planId": plan_id},
    }


def test_verified_session_then_webhook_applies_once(billing, org, webhooks, notifier):
    verified = billing.reconciler.apply_checkout_session(paid_session(org, "pack10"))
    assert verified.status == "applied"

    late_webhook = webhooks.checkout_completed(org, "pack10", session_id="cs_verify")
    assert late_webhook.status == "duplicate"
    assert billing.store.get_record(org).remaining_event_credits == 10
    assert notifier.kinds() == ["payment_confirmation"]


def test_webhook_then_verified_session_applies_once(billing, org, webhooks):
    assert webhooks.checkout_completed(org, "pack10", session_id="cs_verify").status == "applied"

    verified = billing.reconciler.apply_checkout_session(paid_session(org, "pack10"))
    assert verified.status == "duplicate"
    assert billing.store.get_record(org).remaining_event_credits == 10


def test_unpaid_verification_leaves_the_session_to_the_webhook(billing, org, webhooks):
    pending = billing.reconciler.apply_checkout_session(paid_session(org, "pack10", payment_status="unpaid"))
    assert pending.status == "ignored"
    assert billing.store.get_record(org).plan_id == "free"

    assert webhooks.checkout_completed(org, "pack10", session_id="cs_verify").status == "applied"
    assert billing.store.get_record(org).remaining_event_credits == 10



def test_one_delivery_and_five_deliveries_leave_equal_records(billing, webhooks):
    billing.store.register_organization("org-once", "Once")
    billing.store.register_organization("org-many", "Many")

    webhooks.checkout_completed("org-once", "pack10", session_id="cs_once", customer="cus_same")
    for _ in range(5):
        webhooks.checkout_completed("org-many", "pack10", event_id="evt_many", session_id="cs_many", customer="cus_same")

    fields = (
        "plan_id", "status", "period_start", "period_end", "remaining_event_credits",
        "events_created_counter", "invitations_sent_counter", "external_customer_ref",
        "external_subscription_ref", "updated_at",
    )
    once = billing.store.get_record("org-once")
    many = billing.store.get_record("org-many")
    assert {f: getattr(once, f) for f in fields} == {f: getattr(many, f) for f in fields}
