"""
Billing provider webhook ingestion

Applies provider-pushed subscription lifecycle events. Delivery is
at-least-once, so every event is applied as an idempotent upsert keyed by
the provider subscription id, carrying only the provider-reported state.

- subscription.created / updated / resumed (also active, uncanceled):
  upsert the record, rebuild the entitlement from the new plan
- subscription.canceled / expired (also revoked): terminal status,
  entitlement reverted to free
- checkout.* and anything else: logged and ignored

The handler does not take the per-user lock. A webhook racing an in-flight
lifecycle operation is settled by the next reconciliation read.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from certlab import crud
from certlab.api.errors import EventUnmappable
from certlab.enums import SubscriptionStatus
from certlab.integrations.polar import ProviderSubscription, pick
from certlab.models import User, utc_now
from certlab.services.reconciliation import sync_provider_subscription

logger = logging.getLogger(__name__)

UPSERT_EVENTS = frozenset(
    {
        "subscription.created",
        "subscription.updated",
        "subscription.resumed",
        "subscription.active",
        "subscription.uncanceled",
    }
)
TERMINAL_EVENTS = {
    "subscription.canceled": SubscriptionStatus.canceled,
    "subscription.expired": SubscriptionStatus.expired,
    "subscription.revoked": SubscriptionStatus.expired,
}
CHECKOUT_EVENTS = frozenset({"checkout.created", "checkout.updated"})


@dataclass(frozen=True)
class WebhookOutcome:
    """
    - applied: the event changed (or confirmed) local state
    - reason: applied / unmappable / ignored / invalid
    - user_id: owning user when known
    """
    applied: bool
    reason: str
    user_id: str | None = None


def subscription_payload(data: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """
    The subscription object of an event; some deliveries wrap it as
    ``data.subscription``.
    """
    if not data:
        return {}
    nested = data.get("subscription")
    if isinstance(nested, Mapping):
        return nested
    return data


def event_customer_id(event: Mapping[str, Any]) -> str | None:
    data = event.get("data")
    payload = subscription_payload(data if isinstance(data, Mapping) else None)
    value = pick(payload, "customer_id", "customerId")
    customer = payload.get("customer")
    if value is None and isinstance(customer, Mapping):
        value = customer.get("id")
    return str(value) if value is not None else None


def event_metadata(event_type: str, data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Metadata recorded with the record. Only event-derived values, so a
    replayed event writes the same row.
    """
    product = data.get("product") if isinstance(data.get("product"), Mapping) else {}
    price = data.get("price") if isinstance(data.get("price"), Mapping) else {}
    customer = data.get("customer") if isinstance(data.get("customer"), Mapping) else {}
    values = {
        "event_type": event_type,
        "product_name": pick(product, "name"),
        "price_amount": pick(price, "price_amount", "priceAmount", "amount"),
        "price_currency": pick(price, "price_currency", "priceCurrency", "currency"),
        "customer_email": pick(customer, "email"),
        "cancellation_reason": pick(data, "customer_cancellation_reason", "cancellation_reason", "cancellationReason"),
    }
    return {key: value for key, value in values.items() if value is not None}


class WebhookHandler:
    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.session = session
        self.clock = clock

    def handle(self, event: Mapping[str, Any]) -> WebhookOutcome:
        """
        Apply one webhook event.

        Unknown customers and unknown event types are acknowledged as no-ops.
        Database errors propagate so the caller can queue the event for
        retry.

        Args:
            event: ``{"type": ..., "data": {...}}``
        """
        event_type = str(event.get("type") or "")
        data = event.get("data")
        try:
            if event_type in UPSERT_EVENTS:
                return self._apply_subscription(event_type, subscription_payload(data))
            if event_type in TERMINAL_EVENTS:
                return self._apply_terminal(event_type, subscription_payload(data))
        except EventUnmappable as e:
            logger.warning("[Webhook] %s: %s", event_type, e.message)
            return WebhookOutcome(applied=False, reason="unmappable")
        except ValueError as e:
            logger.error("[Webhook] Malformed %s payload: %s", event_type, e)
            return WebhookOutcome(applied=False, reason="invalid")

        if event_type in CHECKOUT_EVENTS:
            logger.info("[Webhook] Checkout event received: %s", event_type)
        else:
            logger.info("[Webhook] Unhandled webhook event: %s", event_type)
        return WebhookOutcome(applied=False, reason="ignored")

    def owner_id(self, event: Mapping[str, Any]) -> str | None:
        """
        Id of the user an event belongs to, None when it cannot be resolved.
        Used to tag events parked for retry, so lookup failures are logged
        rather than raised.
        """
        customer_id = event_customer_id(event)
        if not customer_id:
            return None
        try:
            user = crud.get_user_by_provider_customer_id(session=self.session, customer_id=customer_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning("[Webhook] Could not resolve user for customer %s: %s", customer_id, e)
            return None
        return user.id if user is not None else None

    def _user_for(self, customer_id: str | None) -> User:
        user = None
        if customer_id:
            user = crud.get_user_by_provider_customer_id(session=self.session, customer_id=customer_id)
        if user is None:
            raise EventUnmappable(customer_id)
        return user

    def _apply_subscription(self, event_type: str, data: Mapping[str, Any]) -> WebhookOutcome:
        subscription = ProviderSubscription.from_payload(data)
        user = self._user_for(subscription.customer_id)
        logger.info(
            "[Webhook] Processing %s for user %s: subscription %s, product %s, status %s",
            event_type,
            user.id,
            subscription.id,
            subscription.product_id,
            subscription.status,
        )
        sync_provider_subscription(
            self.session,
            user=user,
            subscription=subscription,
            now=self.clock(),
            meta=event_metadata(event_type, data),
            touch=False,
        )
        return WebhookOutcome(applied=True, reason="applied", user_id=user.id)

    def _apply_terminal(self, event_type: str, data: Mapping[str, Any]) -> WebhookOutcome:
        subscription = ProviderSubscription.from_payload(data)
        user = self._user_for(subscription.customer_id)
        status = TERMINAL_EVENTS[event_type]
        existing = crud.get_subscription_by_provider_id(
            session=self.session, provider_subscription_id=subscription.id
        )
        if existing is None:
            logger.warning(
                "[Webhook] No local record for subscription %s, creating one from the event",
                subscription.id,
            )

        now = self.clock()
        # keep the first recorded timestamp so replays do not move it
        if status is SubscriptionStatus.canceled:
            stamped = replace(
                subscription,
                canceled_at=subscription.canceled_at
                or (existing.canceled_at if existing else None)
                or now,
            )
        else:
            stamped = replace(
                subscription,
                ended_at=subscription.ended_at
                or (existing.ended_at if existing else None)
                or now,
            )

        logger.info(
            "[Webhook] Marking subscription %s %s for user %s", subscription.id, status.value, user.id
        )
        sync_provider_subscription(
            self.session,
            user=user,
            subscription=stamped,
            now=now,
            meta=event_metadata(event_type, data),
            status=status,
            touch=False,
        )
        return WebhookOutcome(applied=True, reason="applied", user_id=user.id)
