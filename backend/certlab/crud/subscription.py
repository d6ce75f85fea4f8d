"""Subscription CRUD

Keyed create/read/update access to ``subscriptions``. Rows are never
deleted.
"""
from typing import Any

from sqlmodel import Session, col, select

from certlab.api.errors import NotFound
from certlab.enums import LIVE_STATUSES, SubscriptionStatus, status_value
from certlab.models import Subscription, utc_now

# Lower rank wins when a user has several rows.
_STATUS_RANK = {
    SubscriptionStatus.active.value: 0,
    SubscriptionStatus.trialing.value: 0,
    SubscriptionStatus.canceling.value: 0,
    SubscriptionStatus.pending_checkout.value: 1,
}


def get_by_user_id(*, session: Session, user_id: str) -> Subscription | None:
    """
    The user's current record: a live one if any, else a pending checkout,
    else the most recently updated terminal record.
    """
    rows = session.exec(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(col(Subscription.updated_at).desc(), col(Subscription.id).desc())
    ).all()
    if not rows:
        return None
    return min(rows, key=lambda row: _STATUS_RANK.get(status_value(row.status), 2))


def get_live_by_user_id(*, session: Session, user_id: str) -> list[Subscription]:
    return list(
        session.exec(
            select(Subscription).where(
                Subscription.user_id == user_id,
                col(Subscription.status).in_([s.value for s in LIVE_STATUSES]),
            )
        ).all()
    )


def get_by_provider_id(*, session: Session, provider_subscription_id: str) -> Subscription | None:
    return session.exec(
        select(Subscription).where(Subscription.polar_subscription_id == provider_subscription_id)
    ).first()


def create(*, session: Session, commit: bool = True, **fields: Any) -> Subscription:
    subscription = Subscription(**fields)
    session.add(subscription)
    if commit:
        session.commit()
        session.refresh(subscription)
    else:
        session.flush()
    return subscription


def update(
    *, session: Session, subscription_id: int, commit: bool = True, **fields: Any
) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    return _apply(session=session, subscription=subscription, commit=commit, fields=fields)


def update_by_provider_id(
    *, session: Session, provider_subscription_id: str, commit: bool = True, **fields: Any
) -> Subscription:
    subscription = get_by_provider_id(
        session=session, provider_subscription_id=provider_subscription_id
    )
    if not subscription:
        raise NotFound(f"Subscription {provider_subscription_id} not found")
    return _apply(session=session, subscription=subscription, commit=commit, fields=fields)


def _apply(
    *, session: Session, subscription: Subscription, commit: bool, fields: dict[str, Any]
) -> Subscription:
    for name, value in fields.items():
        setattr(subscription, name, value)
    if "updated_at" not in fields:
        subscription.updated_at = utc_now()
    session.add(subscription)
    if commit:
        session.commit()
        session.refresh(subscription)
    else:
        session.flush()
    return subscription
