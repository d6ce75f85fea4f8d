"""
Polar billing provider integration

Wraps the parts of the Polar REST API the subscription service needs:
customers, subscriptions, checkout sessions, product prices, and webhook
signature verification.

Error mapping (every method):
- transport errors / timeouts / 5xx -> ProviderUnavailable
- 404 -> NotFound
- any other 4xx -> ProviderError
- a 2xx body that is not JSON, or a malformed object -> ProviderError;
  malformed items in a listing are skipped

Idempotent GETs are retried with tenacity (POLAR_READ_ATTEMPTS attempts,
exponential wait); writes are never retried automatically.

Polar payloads have shipped in both snake_case and camelCase over time, so
every parser here accepts either spelling.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, TypeVar

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from certlab.api.errors import NotFound, ProviderError, ProviderUnavailable, provider_not_configured
from certlab.core.config import settings
from certlab.enums import BillingInterval, SubscriptionStatus
from certlab.models import ensure_utc

logger = logging.getLogger(__name__)

_CUSTOMERS_PATH = "/customers/"
_SUBSCRIPTIONS_PATH = "/subscriptions/"
_SUBSCRIPTION_PATH = "/subscriptions/{subscription_id}"
_CHECKOUTS_PATH = "/checkouts/"
_CHECKOUT_PATH = "/checkouts/{session_id}"
_PRODUCT_PATH = "/products/{product_id}"

# Polar statuses that still grant access
PROVIDER_LIVE_STATUSES = frozenset({"active", "trialing"})


def pick(data: Mapping[str, Any] | None, *keys: str, default: Any = None) -> Any:
    """
    First non-None value among ``keys`` (e.g. "current_period_end",
    "currentPeriodEnd").
    """
    if not data:
        return default
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.error("Failed to parse datetime %r", value)
        return None


def _nested_id(data: Mapping[str, Any], flat: tuple[str, ...], nested: str) -> str | None:
    value = pick(data, *flat)
    if value is None:
        obj = data.get(nested)
        if isinstance(obj, Mapping):
            value = obj.get("id")
    return str(value) if value is not None else None


def _interval(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in ("year", "yearly", "annual"):
        return BillingInterval.year.value
    if normalized in ("month", "monthly"):
        return BillingInterval.month.value
    return None


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: str | None = None
    name: str | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderCustomer:
        return cls(id=str(data["id"]), email=data.get("email"), name=data.get("name"))


@dataclass(frozen=True)
class ProviderSubscription:
    """
    A subscription as reported by the provider, normalized to snake_case.
    """
    id: str
    status: str
    customer_id: str | None = None
    product_id: str | None = None
    price_id: str | None = None
    recurring_interval: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderSubscription:
        """
        Build from a provider subscription object (API response or webhook
        ``data``).

        Raises:
            ValueError: when the payload has no subscription id
        """
        subscription_id = data.get("id")
        if not subscription_id:
            raise ValueError("Provider subscription payload has no id")

        price = data.get("price") if isinstance(data.get("price"), Mapping) else None
        price_id = _nested_id(data, ("price_id", "priceId"), "price")
        if price_id is None:
            prices = data.get("prices")
            if isinstance(prices, list) and prices and isinstance(prices[0], Mapping):
                price_id = prices[0].get("id")
                price = prices[0]

        interval = _interval(pick(data, "recurring_interval", "recurringInterval"))
        if interval is None and price is not None:
            interval = _interval(pick(price, "recurring_interval", "recurringInterval"))

        return cls(
            id=str(subscription_id),
            status=str(pick(data, "status", default="")).lower(),
            customer_id=_nested_id(data, ("customer_id", "customerId"), "customer"),
            product_id=_nested_id(data, ("product_id", "productId"), "product"),
            price_id=str(price_id) if price_id is not None else None,
            recurring_interval=interval,
            current_period_start=parse_datetime(
                pick(data, "current_period_start", "currentPeriodStart")
            ),
            current_period_end=parse_datetime(pick(data, "current_period_end", "currentPeriodEnd")),
            trial_ends_at=parse_datetime(
                pick(data, "trial_ends_at", "trialEndsAt", "trial_end", "trialEnd")
            ),
            cancel_at_period_end=bool(pick(data, "cancel_at_period_end", "cancelAtPeriodEnd")),
            canceled_at=parse_datetime(pick(data, "canceled_at", "canceledAt")),
            ended_at=parse_datetime(pick(data, "ended_at", "endedAt")),
            raw=dict(data),
        )

    @property
    def is_live(self) -> bool:
        return self.status in PROVIDER_LIVE_STATUSES

    def local_status(self) -> SubscriptionStatus:
        """
        Map the provider status onto the local lifecycle.

        A live subscription with a scheduled cancellation is ``canceling``;
        provider states that no longer grant access (incomplete, unpaid,
        past_due, ...) are treated as expired.
        """
        if self.status in PROVIDER_LIVE_STATUSES:
            if self.cancel_at_period_end:
                return SubscriptionStatus.canceling
            return SubscriptionStatus(self.status)
        if self.status == "canceled":
            return SubscriptionStatus.canceled
        return SubscriptionStatus.expired


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None = None
    status: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    product_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> CheckoutSession:
        metadata = data.get("metadata")
        return cls(
            id=str(data["id"]),
            url=pick(data, "url"),
            status=pick(data, "status"),
            customer_id=_nested_id(data, ("customer_id", "customerId"), "customer"),
            subscription_id=_nested_id(data, ("subscription_id", "subscriptionId"), "subscription"),
            product_id=_nested_id(data, ("product_id", "productId"), "product"),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


@dataclass(frozen=True)
class ProductPrice:
    id: str
    interval: str | None
    interval_count: int = 1

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProductPrice:
        return cls(
            id=str(data["id"]),
            interval=_interval(pick(data, "recurring_interval", "recurringInterval", "interval")),
            interval_count=int(pick(data, "interval_count", "intervalCount", default=1)),
        )


class BillingProvider(Protocol):
    """
    What the subscription service needs from a billing provider.
    """

    def get_customer_by_email(self, email: str) -> ProviderCustomer | None: ...

    def create_or_get_customer(self, email: str, name: str | None = None) -> ProviderCustomer: ...

    def get_subscriptions(self, customer_id: str) -> list[ProviderSubscription]: ...

    def create_checkout_session(
        self,
        *,
        product_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: str,
        customer_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckoutSession: ...

    def get_checkout_session(self, session_id: str) -> CheckoutSession: ...

    def cancel_subscription(
        self, subscription_id: str, *, immediate: bool
    ) -> ProviderSubscription: ...

    def resume_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    def switch_subscription_plan(
        self,
        *,
        subscription_id: str,
        new_product_id: str,
        price_id: str | None = None,
        switch_at_period_end: bool = False,
    ) -> ProviderSubscription: ...

    def get_product_prices(self, product_id: str) -> list[ProductPrice]: ...

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool: ...


_Model = TypeVar("_Model")


def _parse(builder: Callable[[Mapping[str, Any]], _Model], data: Any, what: str) -> _Model:
    """
    Build a response model, reporting malformed payloads as ProviderError.
    """
    if not isinstance(data, Mapping):
        logger.error("Polar returned a malformed %s: %r", what, data)
        raise ProviderError(f"Billing provider returned a malformed {what}")
    try:
        return builder(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.error("Polar returned a malformed %s: %s", what, e)
        raise ProviderError(f"Billing provider returned a malformed {what}")


_retry_reads = retry(
    retry=retry_if_exception_type(ProviderUnavailable),
    stop=stop_after_attempt(settings.POLAR_READ_ATTEMPTS),
    wait=wait_exponential(multiplier=0.2, max=settings.POLAR_READ_MAX_WAIT_SECONDS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class PolarClient:
    """
    Polar REST client.

    Each call opens a short-lived ``httpx.Client`` with the configured
    timeout; the API key is sent as a bearer token.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.POLAR_API_KEY
        self._base_url = (base_url or settings.POLAR_API_BASE_URL).rstrip("/")
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.POLAR_WEBHOOK_SECRET
        )
        self._timeout = timeout or settings.POLAR_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise provider_not_configured()
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """
        Send one request and decode the JSON body.

        Raises:
            ProviderUnavailable: network failure or 5xx
            NotFound: 404
            ProviderError: other 4xx, or a body that is not JSON
        """
        url = f"{self._base_url}{path}"
        headers = self._headers()
        try:
            with httpx.Client(timeout=self._timeout) as client:
                r = client.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Polar %s %s failed: %s", method, path, e)
            raise ProviderUnavailable(f"Billing provider request failed: {e}")

        if r.status_code >= 500:
            logger.error("Polar %s %s returned %s", method, path, r.status_code)
            raise ProviderUnavailable(f"Billing provider returned {r.status_code}")
        if r.status_code == 404:
            raise NotFound(f"Billing provider resource not found: {path}")
        if r.status_code >= 400:
            logger.error("Polar %s %s rejected: %s %s", method, path, r.status_code, r.text)
            raise ProviderError(
                f"Billing provider rejected the request ({r.status_code})",
                provider_status=r.status_code,
            )
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            logger.error("Polar %s %s returned a non-JSON body: %s", method, path, r.text[:200])
            raise ProviderError(
                "Billing provider returned an unreadable response", provider_status=r.status_code
            )

    @_retry_reads
    def _get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    @staticmethod
    def _items(data: Any) -> list[dict[str, Any]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            items = data.get("items")
            if isinstance(items, list):
                return items
        return []

    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------

    def get_customer_by_email(self, email: str) -> ProviderCustomer | None:
        items = self._items(self._get(_CUSTOMERS_PATH, params={"email": email}))
        if not items:
            return None
        return _parse(ProviderCustomer.from_payload, items[0], "customer")

    def create_or_get_customer(self, email: str, name: str | None = None) -> ProviderCustomer:
        existing = self.get_customer_by_email(email)
        if existing is not None:
            return existing
        payload: dict[str, Any] = {"email": email}
        if name:
            payload["name"] = name
        customer = _parse(
            ProviderCustomer.from_payload, self._request("POST", _CUSTOMERS_PATH, json=payload), "customer"
        )
        logger.info("Created Polar customer %s for %s", customer.id, email)
        return customer

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------

    def get_subscriptions(self, customer_id: str) -> list[ProviderSubscription]:
        data = self._get(_SUBSCRIPTIONS_PATH, params={"customer_id": customer_id, "limit": 100})
        subscriptions = []
        for item in self._items(data):
            try:
                subscriptions.append(_parse(ProviderSubscription.from_payload, item, "subscription"))
            except ProviderError:
                logger.warning("Skipping malformed subscription for customer %s", customer_id)
        return subscriptions

    def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> ProviderSubscription:
        """
        Cancel now (revoke) or at the end of the current period.
        """
        path = _SUBSCRIPTION_PATH.format(subscription_id=subscription_id)
        if immediate:
            data = self._request("DELETE", path)
        else:
            data = self._request("PATCH", path, json={"cancel_at_period_end": True})
        return self._subscription_or_stub(data, subscription_id)

    def resume_subscription(self, subscription_id: str) -> ProviderSubscription:
        path = _SUBSCRIPTION_PATH.format(subscription_id=subscription_id)
        data = self._request("PATCH", path, json={"cancel_at_period_end": False})
        return self._subscription_or_stub(data, subscription_id)

    def switch_subscription_plan(
        self,
        *,
        subscription_id: str,
        new_product_id: str,
        price_id: str | None = None,
        switch_at_period_end: bool = False,
    ) -> ProviderSubscription:
        payload: dict[str, Any] = {
            "product_id": new_product_id,
            "proration_behavior": "next_period" if switch_at_period_end else "invoice",
        }
        if price_id:
            payload["price_id"] = price_id
        path = _SUBSCRIPTION_PATH.format(subscription_id=subscription_id)
        data = self._request("PATCH", path, json=payload)
        return self._subscription_or_stub(data, subscription_id)

    @staticmethod
    def _subscription_or_stub(data: Any, subscription_id: str) -> ProviderSubscription:
        if isinstance(data, Mapping) and data.get("id"):
            return _parse(ProviderSubscription.from_payload, data, "subscription")
        # 204 responses carry no body
        return ProviderSubscription(id=subscription_id, status="")

    # ------------------------------------------------------------------
    # checkout and catalog
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        product_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: str,
        customer_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckoutSession:
        payload: dict[str, Any] = {
            "products": [product_id],
            "success_url": success_url,
            "return_url": cancel_url,
            "customer_email": customer_email,
            "metadata": metadata or {},
        }
        if customer_id:
            payload["customer_id"] = customer_id
        data = self._request("POST", _CHECKOUTS_PATH, json=payload)
        return _parse(CheckoutSession.from_payload, data, "checkout session")

    def get_checkout_session(self, session_id: str) -> CheckoutSession:
        return _parse(
            CheckoutSession.from_payload,
            self._get(_CHECKOUT_PATH.format(session_id=session_id)),
            "checkout session",
        )

    def get_product_prices(self, product_id: str) -> list[ProductPrice]:
        data = self._get(_PRODUCT_PATH.format(product_id=product_id))
        prices = data.get("prices") if isinstance(data, dict) else None
        result = []
        for item in prices or []:
            try:
                result.append(_parse(ProductPrice.from_payload, item, "price"))
            except ProviderError:
                logger.warning("Skipping malformed price on product %s", product_id)
        return result

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """
        Check the ``polar-webhook-signature`` header.

        The signature is the hex HMAC-SHA256 of the raw body keyed with the
        webhook secret; an optional ``sha256=`` prefix is accepted.

        Returns:
            True when the signature matches, or when no secret is configured
        """
        if not self._webhook_secret:
            logger.warning("Webhook secret not configured, skipping signature verification")
            return True
        if not signature:
            return False
        received = signature.strip()
        if received.startswith("sha256="):
            received = received[len("sha256="):]
        expected = hmac.new(self._webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(received.lower(), expected)


def create_polar_client() -> PolarClient:
    """Build a client from settings."""
    if not settings.polar_configured:
        logger.warning("POLAR_API_KEY not configured, subscription writes will be rejected")
    return PolarClient()
