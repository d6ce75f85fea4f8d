from __future__ import annotations

from datetime import timedelta

from sqlmodel import select

from certlab.models import Subscription, ensure_utc
from certlab.services.reconciliation import sync_provider_subscription
from certlab.services.subscription_lock import SubscriptionLockManager
from certlab.worker import tasks


def _seed(db, user, subscription, at):
    return sync_provider_subscription(db, user=user, subscription=subscription, now=at)


def _rows(db):
    db.expire_all()
    return db.exec(select(Subscription).order_by(Subscription.id)).all()


def test_stale_records_are_refreshed(db, make_user, provider, provider_subscription, now, clock):
    fresh_user = make_user(polar_customer_id="cus_fresh")
    _seed(db, fresh_user, provider_subscription(id="sub_fresh", customer_id="cus_fresh"), now)

    stale_user = make_user(polar_customer_id="cus_1")
    _seed(db, stale_user, provider_subscription(), now - timedelta(hours=3))
    provider.add_customer(stale_user.email, "cus_1")
    provider.add_subscription(provider_subscription(product_id="prod_enterprise"))

    counters = tasks.reconcile_stale_subscriptions(session=db, provider=provider, clock=clock)

    assert counters == {"refreshed": 1, "closed": 0, "unchanged": 0, "failed": 0}
    fresh, stale = _rows(db)
    assert fresh.plan == "pro"
    assert stale.plan == "enterprise"


def test_ended_period_without_provider_subscription_is_closed(
    db, make_user, provider, provider_subscription, now, clock
):
    user = make_user(polar_customer_id="cus_1")
    _seed(
        db,
        user,
        provider_subscription(
            cancel_at_period_end=True,
            current_period_start=now - timedelta(days=32),
            current_period_end=now - timedelta(days=2),
        ),
        now - timedelta(days=3),
    )
    provider.add_customer(user.email, "cus_1")

    counters = tasks.reconcile_stale_subscriptions(session=db, provider=provider, clock=clock)

    assert counters["closed"] == 1
    [record] = _rows(db)
    assert record.status == "canceled"
    assert record.ended_at is not None
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "free"


def test_subscription_canceled_upstream_is_closed_inside_period(
    db, make_user, provider, provider_subscription, now, clock
):
    user = make_user(polar_customer_id="cus_1")
    _seed(db, user, provider_subscription(), now - timedelta(hours=2))
    provider.add_customer(user.email, "cus_1")
    provider.add_subscription(provider_subscription(status="canceled", canceled_at=now - timedelta(hours=1)))

    counters = tasks.reconcile_stale_subscriptions(session=db, provider=provider, clock=clock)

    assert counters == {"refreshed": 0, "closed": 1, "unchanged": 0, "failed": 0}
    [record] = _rows(db)
    assert record.status == "canceled"
    assert ensure_utc(record.canceled_at) == now - timedelta(hours=1)
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "free"


def test_provider_outage_is_counted(db, make_user, provider, provider_subscription, now, clock):
    user = make_user(polar_customer_id="cus_1")
    _seed(db, user, provider_subscription(), now - timedelta(hours=2))
    provider.fail_reads = True

    counters = tasks.reconcile_stale_subscriptions(session=db, provider=provider, clock=clock)

    assert counters["failed"] == 1
    [record] = _rows(db)
    assert record.status == "active"


def test_run_is_skipped_while_another_worker_holds_the_lock(monkeypatch):
    manager = SubscriptionLockManager(max_wait_ms=0, poll_interval_ms=10)
    release = manager.acquire(tasks.RECONCILE_LOCK_KEY, "reconcile-stale")

    def _unexpected():  # type: ignore[no-untyped-def]
        raise AssertionError("provider should not be built")

    monkeypatch.setattr(tasks, "create_polar_client", _unexpected)
    try:
        tasks.run_reconciliation(manager)
    finally:
        release()


def test_run_reconciliation_uses_its_own_session(monkeypatch, engine, provider):
    monkeypatch.setattr(tasks, "engine", engine)
    monkeypatch.setattr(tasks, "create_polar_client", lambda: provider)
    seen: list[object] = []
    monkeypatch.setattr(
        tasks,
        "reconcile_stale_subscriptions",
        lambda *, session, provider: seen.append(provider) or {},
    )
    manager = SubscriptionLockManager(max_wait_ms=0, poll_interval_ms=10)

    tasks.run_reconciliation(manager)

    assert seen == [provider]
    assert not manager.is_locked(tasks.RECONCILE_LOCK_KEY)
