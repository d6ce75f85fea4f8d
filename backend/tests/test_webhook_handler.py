from __future__ import annotations

from datetime import timedelta

from sqlmodel import select

from certlab.models import Subscription, ensure_utc
from certlab.services.webhook_handler import WebhookHandler, event_metadata, subscription_payload


def _event(event_type, now, **overrides):
    data = {
        "id": "sub_1",
        "status": "active",
        "customer_id": "cus_1",
        "product_id": "prod_pro",
        "recurring_interval": "month",
        "current_period_start": (now - timedelta(days=1)).isoformat(),
        "current_period_end": (now + timedelta(days=29)).isoformat(),
        "cancel_at_period_end": False,
        "product": {"id": "prod_pro", "name": "CertLab Pro"},
        "customer": {"id": "cus_1", "email": "learner@example.com"},
    }
    data.update(overrides)
    return {"type": event_type, "data": data}


def _records(db):
    db.expire_all()
    return db.exec(select(Subscription)).all()


def test_created_event_grants_plan(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")

    outcome = WebhookHandler(db, clock=clock).handle(_event("subscription.created", now))

    assert outcome.applied is True
    assert outcome.reason == "applied"
    assert outcome.user_id == user.id
    [record] = _records(db)
    assert record.plan == "pro"
    assert record.status == "active"
    assert record.meta["event_type"] == "subscription.created"
    assert record.meta["product_name"] == "CertLab Pro"
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "pro"
    assert user.subscription_benefits["quizzes_per_day"] == -1


def test_replayed_event_changes_nothing(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    event = _event("subscription.updated", now)
    WebhookHandler(db, clock=clock).handle(event)
    [record] = _records(db)
    first_updated = ensure_utc(record.updated_at)
    db.refresh(user)
    first_benefits = dict(user.subscription_benefits)

    later = now + timedelta(minutes=5)
    outcome = WebhookHandler(db, clock=lambda: later).handle(event)

    assert outcome.applied is True
    [record] = _records(db)
    assert ensure_utc(record.updated_at) == first_updated
    db.refresh(user)
    assert user.subscription_benefits == first_benefits


def test_wrapped_subscription_payload(db, make_user, now, clock):
    make_user(polar_customer_id="cus_1")
    inner = _event("subscription.created", now)["data"]

    outcome = WebhookHandler(db, clock=clock).handle(
        {"type": "subscription.created", "data": {"subscription": inner}}
    )

    assert outcome.applied is True
    assert _records(db)[0].polar_subscription_id == "sub_1"


def test_camel_case_payload(db, make_user, now, clock):
    make_user(polar_customer_id="cus_1")
    event = {
        "type": "subscription.created",
        "data": {
            "id": "sub_9",
            "status": "trialing",
            "customerId": "cus_1",
            "productId": "prod_enterprise",
            "currentPeriodEnd": (now + timedelta(days=14)).isoformat(),
            "cancelAtPeriodEnd": False,
        },
    }

    WebhookHandler(db, clock=clock).handle(event)

    [record] = _records(db)
    assert record.plan == "enterprise"
    assert record.status == "trialing"


def test_unknown_customer_is_unmappable(db, make_user, now, clock):
    make_user(polar_customer_id="cus_other")

    outcome = WebhookHandler(db, clock=clock).handle(_event("subscription.created", now))

    assert outcome.applied is False
    assert outcome.reason == "unmappable"
    assert _records(db) == []


def test_unhandled_event_types_are_ignored(db, make_user, now, clock):
    make_user(polar_customer_id="cus_1")
    handler = WebhookHandler(db, clock=clock)

    assert handler.handle({"type": "checkout.created", "data": {"id": "cs_1"}}).reason == "ignored"
    assert handler.handle({"type": "order.paid", "data": {}}).reason == "ignored"
    assert handler.handle({"data": {}}).reason == "ignored"
    assert _records(db) == []


def test_payload_without_id_is_invalid(db, make_user, now, clock):
    make_user(polar_customer_id="cus_1")
    event = _event("subscription.created", now)
    del event["data"]["id"]

    outcome = WebhookHandler(db, clock=clock).handle(event)
    assert outcome.reason == "invalid"
    assert outcome.applied is False


def test_scheduled_cancellation_keeps_entitlement(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    handler = WebhookHandler(db, clock=clock)
    handler.handle(_event("subscription.created", now))

    handler.handle(_event("subscription.updated", now, cancel_at_period_end=True))

    [record] = _records(db)
    assert record.status == "canceling"
    assert record.cancel_at_period_end is True
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "pro"
    assert user.subscription_benefits["cancel_at_period_end"] is True


def test_terminal_event_reverts_to_free(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    handler = WebhookHandler(db, clock=clock)
    handler.handle(_event("subscription.created", now))

    outcome = handler.handle(_event("subscription.canceled", now, status="canceled"))

    assert outcome.applied is True
    [record] = _records(db)
    assert record.status == "canceled"
    assert ensure_utc(record.canceled_at) == now
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "free"
    assert user.subscription_benefits["quizzes_per_day"] == 5

    # replay keeps the first recorded cancellation time
    later = now + timedelta(hours=1)
    WebhookHandler(db, clock=lambda: later).handle(_event("subscription.canceled", now, status="canceled"))
    [record] = _records(db)
    assert ensure_utc(record.canceled_at) == now


def test_revoked_event_expires(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    handler = WebhookHandler(db, clock=clock)
    handler.handle(_event("subscription.created", now))

    handler.handle(_event("subscription.revoked", now, status="canceled"))

    [record] = _records(db)
    assert record.status == "expired"
    assert ensure_utc(record.ended_at) == now
    db.refresh(user)
    assert user.subscription_benefits["plan"] == "free"


def test_event_replaces_pending_checkout_placeholder(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    db.add(
        Subscription(
            user_id=user.id,
            polar_subscription_id="cs_42",
            product_id="prod_pro",
            plan="pro",
            status="pending_checkout",
            meta={"checkout_session_id": "cs_42", "is_pending_checkout": True},
        )
    )
    db.commit()

    WebhookHandler(db, clock=clock).handle(_event("subscription.created", now))

    [record] = _records(db)
    assert record.polar_subscription_id == "sub_1"
    assert record.status == "active"
    assert record.meta["checkout_session_id"] == "cs_42"


def test_event_for_superseded_subscription_keeps_live_plan(db, make_user, now, clock):
    user = make_user(polar_customer_id="cus_1")
    handler = WebhookHandler(db, clock=clock)
    handler.handle(_event("subscription.created", now, id="sub_old"))
    handler.handle(_event("subscription.created", now, id="sub_new", product_id="prod_enterprise"))

    handler.handle(_event("subscription.canceled", now, id="sub_old", status="canceled"))

    db.refresh(user)
    assert user.subscription_benefits["plan"] == "enterprise"


def test_payload_helpers():
    assert subscription_payload(None) == {}
    assert subscription_payload({"subscription": {"id": "s"}}) == {"id": "s"}
    assert subscription_payload({"id": "s"}) == {"id": "s"}

    meta = event_metadata(
        "subscription.canceled",
        {"customer_cancellation_reason": "too_expensive", "price": {"price_amount": 1900}},
    )
    assert meta == {
        "event_type": "subscription.canceled",
        "price_amount": 1900,
        "cancellation_reason": "too_expensive",
    }
