"""
Plan transitions

Checkout, plan switch, cancel and resume. Each operation holds the user's
subscription lock for its whole duration; the lock is released on success,
on rejection and on exceptions alike.

The provider is always called before anything is written locally, so a
failed provider call leaves local state untouched and surfaces as an error.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlmodel import Session

from certlab import crud
from certlab.api.errors import (
    InvalidTransition,
    NotFound,
    ProviderError,
    ProviderUnavailable,
    ValidationError,
    provider_not_configured,
)
from certlab.core.config import settings
from certlab.enums import (
    BillingInterval,
    RequestedInterval,
    SubscriptionPlan,
    SubscriptionStatus,
    SwitchEffective,
)
from certlab.integrations.polar import BillingProvider, ProviderSubscription
from certlab.models import Subscription, User, ensure_utc, utc_now
from certlab.services.plans import (
    format_plan_name_for_display,
    is_plan_upgrade,
    normalize_plan_name,
    plan_for_product_id,
    product_id_for_plan,
)
from certlab.services.reconciliation import (
    ReconciliationEngine,
    is_live,
    select_live_subscription,
    status_value,
    sync_provider_subscription,
)
from certlab.services.subscription_lock import BaseLockManager

logger = logging.getLogger(__name__)

CHECKOUT_SUCCESS_PATH = "/app/subscription/success?session_id={CHECKOUT_SESSION_ID}"
CHECKOUT_CANCEL_PATH = "/app/subscription/cancel"


@dataclass
class CheckoutResult:
    plan: SubscriptionPlan
    upgraded: bool = False
    checkout_url: str | None = None
    session_id: str | None = None
    subscription: Subscription | None = None
    message: str | None = None


@dataclass
class SwitchResult:
    plan: SubscriptionPlan
    billing_interval: BillingInterval
    effective: SwitchEffective
    effective_date: datetime | None
    subscription: Subscription
    message: str


@dataclass
class CancelResult:
    immediate: bool
    subscription: Subscription
    access_until: datetime | None
    message: str


@dataclass
class ResumeResult:
    subscription: Subscription
    message: str


@dataclass
class ConfirmResult:
    plan: SubscriptionPlan
    billing_interval: str
    activated: bool
    subscription: Subscription


class PlanTransitionOrchestrator:
    """
    Subscription lifecycle operations for one request.

    Args:
        session: database session
        provider: billing provider client
        lock_manager: the application's lock manager
        clock: returns "now"; injectable for tests
    """

    def __init__(
        self,
        session: Session,
        provider: BillingProvider | None,
        lock_manager: BaseLockManager,
        *,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout_ms: int | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.locks = lock_manager
        self.clock = clock
        self.lock_timeout_ms = lock_timeout_ms or settings.SUBSCRIPTION_LOCK_OPERATION_TIMEOUT_MS

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = crud.get_user(session=self.session, user_id=user_id)
        if user is None:
            raise NotFound("User not found", code=404302)
        return user

    def _require_provider(self) -> BillingProvider:
        if self.provider is None or not getattr(self.provider, "configured", True):
            raise provider_not_configured()
        return self.provider

    def _provider_subscriptions(self, user: User) -> list[ProviderSubscription]:
        if not user.polar_customer_id:
            raise NotFound("No subscription found. Please start a new subscription.")
        return self._require_provider().get_subscriptions(user.polar_customer_id)

    def _live_provider_subscription(self, user: User) -> ProviderSubscription:
        live = select_live_subscription(self._provider_subscriptions(user))
        if live is None:
            raise NotFound("You don't have an active subscription.")
        return live

    @staticmethod
    def _checkout_product(plan: SubscriptionPlan) -> str:
        if plan is SubscriptionPlan.free:
            raise ValidationError("The free plan does not require a checkout")
        product_id = product_id_for_plan(plan)
        if not product_id:
            raise ValidationError(
                f"The {format_plan_name_for_display(plan)} plan is not configured. Please contact support."
            )
        return product_id

    @staticmethod
    def _reported(result: ProviderSubscription, fallback: ProviderSubscription) -> ProviderSubscription:
        """The provider's response, or what we sent when it returned no body."""
        reported = result if result.status else fallback
        if reported.customer_id is None:
            reported = replace(reported, customer_id=fallback.customer_id)
        return reported

    def _matching_price_id(self, product_id: str, interval: BillingInterval) -> str | None:
        assert self.provider is not None
        try:
            prices = self.provider.get_product_prices(product_id)
        except (NotFound, ProviderError, ProviderUnavailable) as e:
            # the provider falls back to the product's default price
            logger.warning("Could not load prices for product %s: %s", product_id, e.message)
            return None
        for price in prices:
            if price.interval == interval.value and price.interval_count == 1:
                return price.id
        return None

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------

    def start_checkout(
        self,
        user_id: str,
        plan: Any,
        interval: RequestedInterval = RequestedInterval.monthly,
    ) -> CheckoutResult:
        """
        Start a hosted checkout for ``plan``.

        When the provider already reports a live subscription the plan is
        switched immediately instead and no checkout session is created.

        Raises:
            ValidationError: free plan, unconfigured product, missing email
            ProviderUnavailable / ProviderError: provider failure
            LockContention: another operation holds the user's lock
        """
        target = normalize_plan_name(plan)
        product_id = self._checkout_product(target)

        with self.locks.hold(user_id, "create-checkout", self.lock_timeout_ms):
            user = self._require_user(user_id)
            if not user.email:
                raise ValidationError("An email address is required to subscribe. Please update your profile.")
            provider = self._require_provider()

            name = f"{user.first_name or ''} {user.last_name or ''}".strip() or None
            customer = provider.create_or_get_customer(user.email, name)
            if user.polar_customer_id != customer.id:
                crud.update_user(session=self.session, user_id=user_id, polar_customer_id=customer.id)

            live = select_live_subscription(provider.get_subscriptions(customer.id))
            if live is not None:
                logger.info(
                    "User %s already has subscription %s, switching to %s instead of a new checkout",
                    user_id,
                    live.id,
                    target.value,
                )
                switched = self._switch_locked(
                    user, live, target, SwitchEffective.immediate, interval.to_billing_interval()
                )
                return CheckoutResult(
                    plan=target,
                    upgraded=True,
                    subscription=switched.subscription,
                    message=switched.message,
                )

            base_url = settings.APP_URL.rstrip("/")
            session = provider.create_checkout_session(
                product_id=product_id,
                success_url=f"{base_url}{CHECKOUT_SUCCESS_PATH}",
                cancel_url=f"{base_url}{CHECKOUT_CANCEL_PATH}",
                customer_email=user.email,
                customer_id=customer.id,
                metadata={
                    "user_id": user_id,
                    "plan": target.value,
                    "billing_interval": interval.to_billing_interval().value,
                },
            )
            logger.info("Checkout session %s created for user %s (%s)", session.id, user_id, target.value)

            placeholder = self._record_pending_checkout(
                user, customer_id=customer.id, product_id=product_id, plan=target,
                interval=interval.to_billing_interval(), session_id=session.id, checkout_url=session.url,
            )
            return CheckoutResult(
                plan=target,
                checkout_url=session.url,
                session_id=session.id,
                subscription=placeholder,
            )

    def _record_pending_checkout(
        self,
        user: User,
        *,
        customer_id: str,
        product_id: str,
        plan: SubscriptionPlan,
        interval: BillingInterval,
        session_id: str,
        checkout_url: str | None,
    ) -> Subscription | None:
        current = crud.get_subscription_by_user_id(session=self.session, user_id=user.id)
        if is_live(current):
            # the live record stays authoritative until a webhook replaces it
            return None
        now = self.clock()
        fields: dict[str, Any] = {
            "polar_subscription_id": session_id,
            "polar_customer_id": customer_id,
            "product_id": product_id,
            "price_id": None,
            "plan": plan.value,
            "status": SubscriptionStatus.pending_checkout.value,
            "billing_interval": interval.value,
            "cancel_at_period_end": False,
            "meta": {
                "checkout_session_id": session_id,
                "checkout_created_at": now.isoformat(),
                "checkout_url": checkout_url,
                "is_pending_checkout": True,
            },
            "updated_at": now,
        }
        if current is not None and status_value(current.status) == SubscriptionStatus.pending_checkout.value:
            return crud.update_subscription(session=self.session, subscription_id=current.id, **fields)
        return crud.create_subscription(session=self.session, user_id=user.id, created_at=now, **fields)

    def confirm_checkout(self, user_id: str, session_id: str) -> ConfirmResult:
        """
        Verify a completed checkout and force a provider refresh.

        Raises:
            NotFound: unknown session, or a session started by another user
            ProviderUnavailable: provider unreachable or not configured
        """
        provider = self._require_provider()
        self._require_user(user_id)
        session = provider.get_checkout_session(session_id)
        owner = session.metadata.get("user_id")
        if owner is not None and owner != user_id:
            logger.warning("User %s tried to confirm checkout %s of user %s", user_id, session_id, owner)
            raise NotFound("Checkout session not found", code=404303)

        state = ReconciliationEngine(self.session, provider, clock=self.clock).get_authoritative_state(
            user_id, force_refresh=True
        )
        if state.warning:
            raise ProviderUnavailable(state.warning)

        record = state.record
        activated = is_live(record)
        if activated:
            plan = normalize_plan_name(record.plan)
            billing_interval = record.billing_interval or BillingInterval.month.value
        else:
            plan = normalize_plan_name(session.metadata.get("plan"))
            billing_interval = session.metadata.get("billing_interval") or BillingInterval.month.value
        logger.info(
            "Checkout %s confirmed for user %s: plan=%s activated=%s", session_id, user_id, plan.value, activated
        )
        return ConfirmResult(
            plan=plan, billing_interval=billing_interval, activated=activated, subscription=record
        )

    # ------------------------------------------------------------------
    # switch
    # ------------------------------------------------------------------

    def switch_plan(
        self,
        user_id: str,
        new_plan: Any,
        effective: SwitchEffective = SwitchEffective.immediate,
        interval: RequestedInterval = RequestedInterval.monthly,
    ) -> SwitchResult:
        """
        Move a live subscription to another paid plan.

        ``immediate`` rebuilds the entitlement now; ``at_period_end`` leaves
        the current entitlement in place and records the scheduled plan.

        Raises:
            InvalidTransition: already on the requested plan
            NotFound: no live subscription
        """
        target = normalize_plan_name(new_plan)
        with self.locks.hold(user_id, "switch-subscription", self.lock_timeout_ms):
            user = self._require_user(user_id)
            self._require_provider()
            live = self._live_provider_subscription(user)
            return self._switch_locked(user, live, target, effective, interval.to_billing_interval())

    def _switch_locked(
        self,
        user: User,
        live: ProviderSubscription,
        target: SubscriptionPlan,
        effective: SwitchEffective,
        interval: BillingInterval,
    ) -> SwitchResult:
        current = plan_for_product_id(live.product_id)
        if target is current:
            raise InvalidTransition(f"You are already on the {format_plan_name_for_display(target)} plan")
        new_product_id = self._checkout_product(target)
        price_id = self._matching_price_id(new_product_id, interval)

        at_period_end = effective is SwitchEffective.at_period_end
        assert self.provider is not None
        result = self.provider.switch_subscription_plan(
            subscription_id=live.id,
            new_product_id=new_product_id,
            price_id=price_id,
            switch_at_period_end=at_period_end,
        )
        reported = self._reported(result, live)
        now = self.clock()

        meta: dict[str, Any] = {
            "switched_from": live.product_id,
            "switch_requested_at": now.isoformat(),
            "switch_effective": effective.value,
        }
        if at_period_end:
            # keep the current product until the period rolls over
            reported = replace(reported, product_id=live.product_id, price_id=live.price_id)
            meta.update({"scheduled_plan": target.value, "scheduled_product_id": new_product_id})
        else:
            reported = replace(
                reported,
                product_id=new_product_id,
                price_id=price_id or reported.price_id,
                recurring_interval=interval.value,
            )
            meta.update({"scheduled_plan": None, "scheduled_product_id": None})

        record = sync_provider_subscription(
            self.session, user=user, subscription=reported, now=now, meta=meta
        )

        verb = "upgrade" if is_plan_upgrade(current, target) else "downgrade"
        name = format_plan_name_for_display(target)
        if at_period_end:
            message = f"Plan {verb} to {name} scheduled for the end of your current billing period"
            effective_date = ensure_utc(record.current_period_end)
        else:
            message = f"Successfully {verb}d to {name} plan"
            effective_date = now
        logger.info("User %s: %s -> %s (%s)", user.id, current.value, target.value, effective.value)
        return SwitchResult(
            plan=target,
            billing_interval=interval,
            effective=effective,
            effective_date=effective_date,
            subscription=record,
            message=message,
        )

    # ------------------------------------------------------------------
    # cancel / resume
    # ------------------------------------------------------------------

    def cancel(self, user_id: str, immediate: bool = False) -> CancelResult:
        """
        Cancel the live subscription.

        Immediate cancellation ends access now (entitlement reverts to free);
        otherwise the subscription is ``canceling`` and keeps its entitlement
        until the period ends.

        Raises:
            NotFound: no live subscription
        """
        with self.locks.hold(user_id, "cancel-subscription", self.lock_timeout_ms):
            user = self._require_user(user_id)
            self._require_provider()
            live = self._live_provider_subscription(user)

            assert self.provider is not None
            result = self.provider.cancel_subscription(live.id, immediate=immediate)
            reported = self._reported(result, live)
            now = self.clock()

            meta = {
                "cancellation_requested_at": now.isoformat(),
                "cancellation_immediate": immediate,
                "cancellation_processed": True,
            }
            if immediate:
                reported = replace(
                    reported,
                    cancel_at_period_end=False,
                    canceled_at=reported.canceled_at or now,
                    ended_at=now,
                )
                status = SubscriptionStatus.canceled
            else:
                reported = replace(
                    reported,
                    cancel_at_period_end=True,
                    canceled_at=reported.canceled_at or now,
                )
                status = SubscriptionStatus.canceling
            record = sync_provider_subscription(
                self.session, user=user, subscription=reported, now=now, meta=meta, status=status
            )

        access_until = None if immediate else ensure_utc(record.current_period_end)
        if immediate:
            message = "Your subscription has been canceled immediately"
        elif access_until is not None:
            message = f"Your subscription will be canceled at the end of the billing period ({access_until.date().isoformat()})"
        else:
            message = "Your subscription will be canceled at the end of the billing period"
        logger.info("User %s canceled subscription %s (immediate=%s)", user_id, live.id, immediate)
        return CancelResult(
            immediate=immediate, subscription=record, access_until=access_until, message=message
        )

    def resume(self, user_id: str) -> ResumeResult:
        """
        Undo a scheduled cancellation.

        Legal only while cancellation is pending (``cancel_at_period_end``,
        status canceled or canceling) and the period has not ended.

        Raises:
            NotFound: no subscription on file
            InvalidTransition: nothing to resume
        """
        with self.locks.hold(user_id, "resume-subscription", self.lock_timeout_ms):
            user = self._require_user(user_id)
            self._require_provider()
            now = self.clock()
            target = self._resumable(self._provider_subscriptions(user), now)
            if target is None:
                raise InvalidTransition(
                    "Unable to find a canceled subscription to resume. Your subscription may have expired."
                )

            assert self.provider is not None
            result = self.provider.resume_subscription(target.id)
            reported = self._reported(result, target)
            if reported.status not in ("active", "trialing"):
                reported = replace(reported, status="active")
            reported = replace(reported, cancel_at_period_end=False, canceled_at=None, ended_at=None)

            record = sync_provider_subscription(
                self.session,
                user=user,
                subscription=reported,
                now=now,
                meta={"resumed_at": now.isoformat(), "cancellation_processed": False},
            )
        logger.info("User %s resumed subscription %s", user_id, target.id)
        return ResumeResult(subscription=record, message="Subscription resumed successfully")

    @staticmethod
    def _resumable(
        subscriptions: list[ProviderSubscription], now: datetime
    ) -> ProviderSubscription | None:
        for subscription in subscriptions:
            if not subscription.cancel_at_period_end:
                continue
            if subscription.status not in ("active", "trialing", "canceled"):
                continue
            period_end = subscription.current_period_end
            if period_end is not None and period_end <= now:
                continue
            return subscription
        return None
