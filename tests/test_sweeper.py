from datetime import timedelta

import pytest
from sqlmodel import select

from core.errors import QuotaExceeded
from models.models import ReminderDispatchLog
from services.leader_lease import LeaderLease
from services.sweeper import SWEEPER_LEASE_NAME


def test_expired_pack_falls_back_to_free_and_keeps_counters(billing, org, webhooks, clock, notifier):
    billing.quota.consume_event(org)
    webhooks.checkout_completed(org, "single")
    billing.quota.consume_event(org)
    end = billing.store.get_record(org).period_end

    clock.set(end + timedelta(days=1))
    report = billing.sweeper.run_once()
    assert report.expired == 1
    assert report.errors == 0

    record = billing.store.get_record(org)
    assert record.plan_id == "free"
    assert record.status == "active"
    assert record.period_end is None
    assert record.remaining_event_credits is None
    assert record.events_created_counter == 2
    assert "expired" in notifier.kinds()

    # Lifetime counter already exceeds the free cap
    decision = billing.quota.can_create_event(org)
    assert decision.allowed is False
    assert decision.reason == "Free plan limit reached (2/1)"
    with pytest.raises(QuotaExceeded):
        billing.quota.consume_event(org)


def test_sweeper_leaves_current_free_and_canceled_records_alone(billing, webhooks, clock):
    billing.store.register_organization("free-org", "Free")
    billing.store.register_organization("pro-org", "Pro")
    billing.store.register_organization("gone-org", "Gone")
    webhooks.checkout_completed("pro-org", "pro-club", subscription="sub_pro")
    webhooks.checkout_completed("gone-org", "pro-club", subscription="sub_gone")
    webhooks.subscription_deleted("sub_gone")

    clock.advance(days=10)
    report = billing.sweeper.run_once()
    assert report.expired == 0
    assert billing.store.get_record("pro-org").plan_id == "pro-club"
    assert billing.store.get_record("gone-org").status == "canceled"
    assert billing.store.get_record("free-org").plan_id == "free"


def test_reminders_are_sent_once_per_threshold_and_day(billing, org, webhooks, clock, notifier):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_1")
    end = billing.store.get_record(org).period_end

    clock.set(end - timedelta(days=7))
    assert billing.sweeper.run_once().reminders_sent == 1
    clock.advance(hours=2)
    assert billing.sweeper.run_once().reminders_sent == 0

    clock.set(end - timedelta(days=5))
    assert billing.sweeper.run_once().reminders_sent == 0

    clock.set(end - timedelta(days=3))
    assert billing.sweeper.run_once().reminders_sent == 1

    reminders = [n for n in notifier.sent if n.kind.value == "renewal_reminder"]
    assert [n.context["days_left"] for n in reminders] == [7, 3]
    with billing.sessions() as session:
        assert len(session.exec(select(ReminderDispatchLog)).all()) == 2


def test_one_failing_record_does_not_stop_the_pass(billing, webhooks, clock, monkeypatch):
    for org_id in ("org-a", "org-b"):
        billing.store.register_organization(org_id, org_id)
        webhooks.checkout_completed(org_id, "single")

    original = billing.store.apply_expiration

    def flaky(record, now):
        if record.organization_id == "org-a":
            raise RuntimeError("boom")
        return original(record, now)

    monkeypatch.setattr(billing.store, "apply_expiration", flaky)
    clock.advance(days=400)

    report = billing.sweeper.run_once()
    assert report.expired == 1
    assert report.errors == 1
    assert billing.store.get_record("org-a").plan_id == "single"
    assert billing.store.get_record("org-b").plan_id == "free"


def test_only_one_sweeper_holds_the_lease(billing, clock):
    first = LeaderLease(billing.sessions, SWEEPER_LEASE_NAME, ttl_seconds=60, holder="a", clock=clock)
    second = LeaderLease(billing.sessions, SWEEPER_LEASE_NAME, ttl_seconds=60, holder="b", clock=clock)

    assert first.acquire() is True
    assert second.acquire() is False
    assert first.acquire() is True

    first.release()
    assert second.acquire() is True
    assert first.acquire() is False

    clock.advance(seconds=61)
    assert first.acquire() is True


def test_sweep_is_skipped_while_another_instance_holds_the_lease(billing, clock):
    other = LeaderLease(billing.sessions, SWEEPER_LEASE_NAME, ttl_seconds=600, holder="other", clock=clock)
    assert other.acquire() is True

    assert billing.sweeper.run_once().skipped is True
    other.release()
    assert billing.sweeper.run_once().skipped is False


def test_expired_pack_with_credits_left_uses_the_free_cap(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pack10")
    for _ in range(7):
        billing.quota.consume_event(org)
    assert billing.store.get_record(org).remaining_event_credits == 3

    clock.advance(days=366)
    assert billing.sweeper.run_once().expired == 1

    decision = billing.quota.can_create_event(org)
    assert decision.plan_id == "free"
    assert decision.allowed is False
    assert decision.reason == "Free plan limit reached (7/1)"


def test_recurring_plan_waits_out_the_renewal_grace(billing, org, webhooks, clock):
    webhooks.checkout_completed(org, "pro-club", subscription="sub_pro")
    end = billing.store.get_record(org).period_end

    clock.set(end + timedelta(days=1))
    assert billing.sweeper.run_once().expired == 0
    assert billing.store.get_record(org).plan_id == "pro-club"

    clock.set(end + timedelta(days=8))
    assert billing.sweeper.run_once().expired == 1
    record = billing.store.get_record(org)
    assert record.plan_id == "free"
    assert record.status == "active"
