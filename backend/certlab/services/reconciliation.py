"""
Subscription reconciliation

Cache-aside policy deciding when to trust the local subscription record and
when to refresh it from the billing provider.

Read path (``get_authoritative_state``):
1. read the user's local record
2. fresh (younger than SUBSCRIPTION_FRESHNESS_SECONDS) -> return it, no
   provider call
3. stale or missing -> customer by email -> subscriptions -> pick the live
   one -> upsert record + rebuild entitlement in one transaction; when
   nothing is live the local live record is closed and the user drops to
   free
4. provider unreachable -> local record with a staleness warning, or a
   synthesized free/inactive record

Reads never raise. ``sync_provider_subscription`` is the single write path
for provider-reported state and is shared with the webhook handler and the
orchestrator.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlmodel import Session

from certlab import crud
from certlab.api.errors import NotFound, ProviderError, ProviderUnavailable
from certlab.core.config import settings
from certlab.enums import (
    LIVE_STATUSES,
    PAID_STATUSES,
    BillingInterval,
    SubscriptionPlan,
    SubscriptionStatus,
    status_value,
)
from certlab.integrations.polar import BillingProvider, ProviderSubscription
from certlab.models import Subscription, User, ensure_utc, utc_now
from certlab.services.plans import (
    build_entitlement,
    free_entitlement,
    get_plan,
    normalize_plan_name,
    plan_for_product_id,
)
from certlab.services.subscription_validator import apply_corrections, validate_subscription_state

logger = logging.getLogger(__name__)

STALE_WARNING = "Unable to sync with billing provider, using cached data"

_LIVE_VALUES = frozenset(s.value for s in LIVE_STATUSES)
_PAID_VALUES = frozenset(s.value for s in PAID_STATUSES)


@dataclass
class ReconciledState:
    """
    Result of a reconciliation read.

    - record: the authoritative record; ``id`` is None for the synthesized
      free/inactive record
    - from_cache: no provider refresh happened
    - warning: set when the provider could not be reached
    """
    record: Subscription
    from_cache: bool
    warning: str | None = None

    @property
    def synthesized(self) -> bool:
        return self.record.id is None


def is_live(record: Subscription | None) -> bool:
    return record is not None and status_value(record.status) in _LIVE_VALUES


def synthesize_free_record(user_id: str) -> Subscription:
    """Unsaved ``{plan: free, status: inactive}`` record."""
    return Subscription(
        user_id=user_id,
        plan=SubscriptionPlan.free.value,
        status=SubscriptionStatus.inactive.value,
        cancel_at_period_end=False,
    )


def select_live_subscription(
    subscriptions: Iterable[ProviderSubscription],
) -> ProviderSubscription | None:
    """
    Pick the subscription that grants access.

    Among live (active/trialing) subscriptions: ``active`` beats
    ``trialing``, then the latest ``current_period_end`` wins, then the
    provider's listing order.
    """
    best: ProviderSubscription | None = None
    best_key: tuple[int, float] | None = None
    for subscription in subscriptions:
        if not subscription.is_live:
            continue
        period_end = subscription.current_period_end
        key = (
            1 if subscription.status == "active" else 0,
            period_end.timestamp() if period_end else float("-inf"),
        )
        # strict comparison keeps the earliest listed on ties
        if best_key is None or key > best_key:
            best, best_key = subscription, key
    return best


def entitlement_for(record: Subscription | None, *, synced_at: datetime) -> dict[str, Any]:
    """
    Entitlement implied by a record: the record's plan while it is live,
    otherwise the free tier.
    """
    if record is None:
        return free_entitlement(synced_at=synced_at)
    if is_live(record):
        return build_entitlement(
            record.plan,
            subscription_id=record.id,
            polar_subscription_id=record.polar_subscription_id,
            cancel_at_period_end=bool(record.cancel_at_period_end),
            canceled_at=ensure_utc(record.canceled_at),
            current_period_end=ensure_utc(record.current_period_end),
            trial_ends_at=ensure_utc(record.trial_ends_at),
            synced_at=synced_at,
        )
    return free_entitlement(
        canceled_at=ensure_utc(record.canceled_at),
        ended_at=ensure_utc(record.ended_at),
        synced_at=synced_at,
    )


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def _same(current: Any, new: Any) -> bool:
    return _plain(current) == _plain(new)


def _without_sync_stamp(benefits: dict[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (benefits or {}).items() if k != "last_synced_at"}


def rebuild_user_entitlement(
    session: Session, *, user: User, now: datetime, touch: bool = True
) -> dict[str, Any]:
    """
    Rewrite ``user.subscription_benefits`` from the user's current record.

    With ``touch=False`` an unchanged entitlement is left alone (including
    its ``last_synced_at``), so replays do not rewrite the row.
    """
    current = crud.get_subscription_by_user_id(session=session, user_id=user.id)
    benefits = entitlement_for(current, synced_at=now)
    if not touch and _without_sync_stamp(user.subscription_benefits) == _without_sync_stamp(benefits):
        return user.subscription_benefits or benefits
    crud.update_user(session=session, user_id=user.id, commit=False, subscription_benefits=benefits)
    return benefits


def sync_provider_subscription(
    session: Session,
    *,
    user: User,
    subscription: ProviderSubscription,
    now: datetime | None = None,
    meta: dict[str, Any] | None = None,
    status: SubscriptionStatus | None = None,
    touch: bool = True,
    commit: bool = True,
) -> Subscription:
    """
    Upsert the local record for a provider subscription and rebuild the
    user's entitlement in the same transaction.

    Lookup order: provider subscription id, then the user's
    ``pending_checkout`` placeholder, else a new row. Any other live row the
    user still has is marked expired.

    Args:
        user: owning user
        subscription: provider-reported state, recorded as-is
        meta: merged into the record's metadata
        status: overrides the status derived from the provider state
        touch: bump ``updated_at`` even when nothing changed (reconciliation
            reads); webhook replays pass False so they leave the row as is
    """
    now = now or utc_now()
    record = crud.get_subscription_by_provider_id(
        session=session, provider_subscription_id=subscription.id
    )
    if record is None:
        record = _pending_placeholder(session, user_id=user.id)

    resolved_status = status or subscription.local_status()
    fields: dict[str, Any] = {
        "polar_subscription_id": subscription.id,
        "polar_customer_id": subscription.customer_id or user.polar_customer_id,
        "product_id": subscription.product_id,
        "price_id": subscription.price_id,
        "plan": plan_for_product_id(subscription.product_id).value,
        "status": resolved_status.value,
        "billing_interval": subscription.recurring_interval or BillingInterval.month.value,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "trial_ends_at": subscription.trial_ends_at,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": subscription.canceled_at,
        "ended_at": subscription.ended_at,
    }
    if subscription.product_id is None and record is not None:
        # 204 responses and thin events do not repeat the product
        for name in ("product_id", "price_id", "plan"):
            fields[name] = getattr(record, name)
    if record is not None:
        fields["meta"] = {**(record.meta or {}), **(meta or {})}
    else:
        fields["meta"] = dict(meta or {})

    if record is None:
        record = crud.create_subscription(
            session=session,
            commit=False,
            user_id=user.id,
            created_at=now,
            updated_at=now,
            **fields,
        )
        logger.info(
            "Created subscription record %s for user %s (%s, %s)",
            record.id,
            user.id,
            fields["plan"],
            fields["status"],
        )
    else:
        changes = {
            name: value for name, value in fields.items() if not _same(getattr(record, name), value)
        }
        if changes or touch:
            record = crud.update_subscription(
                session=session,
                subscription_id=record.id,
                commit=False,
                updated_at=now,
                **changes,
            )
            if changes:
                logger.info(
                    "Updated subscription record %s for user %s: %s",
                    record.id,
                    user.id,
                    ", ".join(sorted(changes)),
                )

    if is_live(record):
        _expire_superseded(session, user_id=user.id, keep=record, now=now)

    if subscription.customer_id and not user.polar_customer_id:
        crud.update_user(
            session=session, user_id=user.id, commit=False, polar_customer_id=subscription.customer_id
        )
    rebuild_user_entitlement(session, user=user, now=now, touch=touch)

    if commit:
        session.commit()
        session.refresh(record)
    return record


def _pending_placeholder(session: Session, *, user_id: str) -> Subscription | None:
    record = crud.get_subscription_by_user_id(session=session, user_id=user_id)
    if record is not None and status_value(record.status) == SubscriptionStatus.pending_checkout.value:
        return record
    return None


def _expire_superseded(
    session: Session, *, user_id: str, keep: Subscription, now: datetime
) -> None:
    for other in crud.get_live_subscriptions_by_user_id(session=session, user_id=user_id):
        if other.id == keep.id:
            continue
        logger.warning(
            "User %s has a second live subscription %s, marking it expired (superseded by %s)",
            user_id,
            other.polar_subscription_id,
            keep.polar_subscription_id,
        )
        crud.update_subscription(
            session=session,
            subscription_id=other.id,
            commit=False,
            updated_at=now,
            status=SubscriptionStatus.expired.value,
            ended_at=other.ended_at or now,
            meta={**(other.meta or {}), "superseded_by": keep.polar_subscription_id},
        )


class ReconciliationEngine:
    """
    Decides between the cached record and a provider refresh.

    Args:
        session: database session
        provider: billing provider; None (or an unconfigured client) means
            reads are served from local state only
        freshness_seconds: cache window, defaults to settings
        clock: returns "now"; injectable for tests
    """

    def __init__(
        self,
        session: Session,
        provider: BillingProvider | None,
        *,
        freshness_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.provider = provider
        self.freshness = timedelta(
            seconds=freshness_seconds
            if freshness_seconds is not None
            else settings.SUBSCRIPTION_FRESHNESS_SECONDS
        )
        self.clock = clock

    @property
    def provider_ready(self) -> bool:
        return self.provider is not None and getattr(self.provider, "configured", True)

    def is_fresh(self, record: Subscription) -> bool:
        updated_at = ensure_utc(record.updated_at)
        if updated_at is None:
            return False
        return self.clock() - updated_at < self.freshness

    def get_authoritative_state(self, user_id: str, *, force_refresh: bool = False) -> ReconciledState:
        """
        Authoritative subscription record for a user. Never raises for
        provider trouble.

        Args:
            user_id: user id
            force_refresh: skip the freshness check (checkout confirmation)
        """
        local = crud.get_subscription_by_user_id(session=self.session, user_id=user_id)
        if local is not None and not force_refresh and self.is_fresh(local):
            return ReconciledState(record=local, from_cache=True)

        user = crud.get_user(session=self.session, user_id=user_id)
        if user is None or not user.email or not self.provider_ready:
            return self._fallback(user_id, local)

        try:
            record = self.refresh(user)
        except NotFound as e:
            logger.info("Provider lookup for user %s found nothing: %s", user_id, e.message)
            self.session.rollback()
            return self._fallback(user_id, local)
        except (ProviderUnavailable, ProviderError) as e:
            logger.warning("Provider sync failed for user %s: %s", user_id, e.message)
            self.session.rollback()
            return self._fallback(user_id, local, warning=STALE_WARNING)
        if record is None:
            return ReconciledState(record=synthesize_free_record(user_id), from_cache=False)
        return ReconciledState(record=record, from_cache=False)

    def _fallback(
        self, user_id: str, local: Subscription | None, *, warning: str | None = None
    ) -> ReconciledState:
        if local is not None:
            return ReconciledState(record=local, from_cache=True, warning=warning)
        return ReconciledState(record=synthesize_free_record(user_id), from_cache=True, warning=warning)

    def refresh(self, user: User) -> Subscription | None:
        """
        One refresh cycle: customer -> subscriptions -> live one -> upsert.

        When the provider reports nothing live (no customer, or only ended
        subscriptions) the user's live records are closed and the
        entitlement drops to free in the same commit; otherwise the current
        record is only stamped as synced.

        Returns:
            the user's current record, None when there is none

        Raises:
            ProviderUnavailable / ProviderError: provider failure
        """
        assert self.provider is not None
        now = self.clock()
        customer = self.provider.get_customer_by_email(user.email or "")
        if customer is None:
            return self._settle_without_live(user, [], now=now)
        reported = self.provider.get_subscriptions(customer.id)
        live = select_live_subscription(reported)
        if live is None:
            return self._settle_without_live(user, reported, now=now)
        if live.customer_id is None:
            live = replace(live, customer_id=customer.id)
        return sync_provider_subscription(
            self.session,
            user=user,
            subscription=live,
            now=now,
            meta={"synced_from_provider": True},
        )

    def _settle_without_live(
        self, user: User, reported: list[ProviderSubscription], *, now: datetime
    ) -> Subscription | None:
        by_id = {subscription.id: subscription for subscription in reported}
        live_records = crud.get_live_subscriptions_by_user_id(session=self.session, user_id=user.id)
        for record in live_records:
            ended = by_id.get(record.polar_subscription_id or "")
            if ended is not None:
                logger.warning(
                    "Provider reports subscription %s of user %s as %s, closing local record",
                    ended.id,
                    user.id,
                    ended.status,
                )
                sync_provider_subscription(
                    self.session,
                    user=user,
                    subscription=ended,
                    now=now,
                    meta={"synced_from_provider": True},
                    commit=False,
                )
                continue
            status = (
                SubscriptionStatus.canceled if record.cancel_at_period_end else SubscriptionStatus.expired
            )
            logger.warning(
                "Provider no longer reports subscription %s of user %s, closing local record as %s",
                record.polar_subscription_id,
                user.id,
                status.value,
            )
            crud.update_subscription(
                session=self.session,
                subscription_id=record.id,
                commit=False,
                updated_at=now,
                status=status.value,
                ended_at=record.ended_at or now,
                meta={**(record.meta or {}), "closed_by_reconciliation": True},
            )

        current = crud.get_subscription_by_user_id(session=self.session, user_id=user.id)
        if current is not None and not live_records:
            crud.update_subscription(
                session=self.session, subscription_id=current.id, commit=False, updated_at=now
            )
        rebuild_user_entitlement(self.session, user=user, now=now, touch=current is not None)
        self.session.commit()
        if current is not None:
            self.session.refresh(current)
        return current

    def get_status(self, user_id: str) -> dict[str, Any]:
        """
        Status payload for the front end.

        The record is passed through the state validator; corrections are
        applied to the response and problems are logged. Also resets the
        user's daily quiz counter when the last reset predates today (UTC).
        """
        user = crud.get_user(session=self.session, user_id=user_id)
        daily_quiz_count = self._reset_daily_quiz_count(user) if user is not None else 0

        state = self.get_authoritative_state(user_id)
        record = state.record
        live = is_live(record)
        plan = normalize_plan_name(record.plan) if live else SubscriptionPlan.free
        period_end = ensure_utc(record.current_period_end)
        canceled_at = ensure_utc(record.canceled_at)
        snapshot = {
            "plan": plan.value,
            "status": status_value(record.status),
            "cancel_at_period_end": bool(record.cancel_at_period_end),
            "expires_at": period_end.isoformat() if period_end else None,
            "current_period_start": ensure_utc(record.current_period_start),
            "current_period_end": period_end,
            "canceled_at": canceled_at.isoformat() if canceled_at else None,
        }
        validation = validate_subscription_state(snapshot, now=self.clock())
        if validation.warnings:
            logger.warning("Subscription state warnings for user %s: %s", user_id, validation.warnings)
        if not validation.is_valid:
            logger.error("Subscription state errors for user %s: %s", user_id, validation.errors)
        snapshot = apply_corrections(snapshot, validation)

        definition = get_plan(validation.normalized_plan)
        return {
            "is_configured": settings.polar_configured,
            "is_subscribed": status_value(record.status) in _PAID_VALUES,
            "plan": validation.normalized_plan.value,
            "status": snapshot["status"],
            "cancel_at_period_end": snapshot["cancel_at_period_end"],
            "canceled_at": snapshot["canceled_at"],
            "expires_at": snapshot["expires_at"],
            "features": list(definition.features),
            "limits": definition.limits.as_dict(),
            "daily_quiz_count": daily_quiz_count,
            "warning": state.warning,
        }

    def _reset_daily_quiz_count(self, user: User) -> int:
        now = self.clock()
        last_reset = ensure_utc(user.last_quiz_reset_date)
        if last_reset is not None and last_reset.date() >= now.date():
            return user.daily_quiz_count
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        crud.update_user(
            session=self.session,
            user_id=user.id,
            daily_quiz_count=0,
            last_quiz_reset_date=today,
        )
        return 0
