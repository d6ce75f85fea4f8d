from __future__ import annotations

import hashlib
import hmac
import json as jsonlib
from datetime import timedelta

import httpx
import pytest

from certlab.api.errors import NotFound, ProviderError, ProviderUnavailable
from certlab.enums import SubscriptionStatus
from certlab.integrations.polar import PolarClient, ProviderSubscription, parse_datetime
from certlab.services.reconciliation import STALE_WARNING, ReconciliationEngine, sync_provider_subscription


class FakeResp:
    def __init__(self, status_code, data=None):  # type: ignore[no-untyped-def]
        self.status_code = status_code
        self._data = data
        self.content = b"" if data is None else jsonlib.dumps(data).encode()
        self.text = self.content.decode()

    def json(self):  # type: ignore[no-untyped-def]
        return self._data


class TextResp:
    def __init__(self, status_code, text):  # type: ignore[no-untyped-def]
        self.status_code = status_code
        self.text = text
        self.content = text.encode()

    def json(self):  # type: ignore[no-untyped-def]
        return jsonlib.loads(self.text)


def _install(monkeypatch, responses):
    """Serve queued responses (or raise queued exceptions) in order."""
    sent: list[dict] = []

    class FakeHttpxClient:
        def __init__(self, *args, **kwargs):  # type: ignore[no-untyped-def]
            _ = args, kwargs

        def __enter__(self):  # type: ignore[no-untyped-def]
            return self

        def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
            return False

        def request(self, method, url, params=None, json=None, headers=None):  # type: ignore[no-untyped-def]
            sent.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
            item = responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

    monkeypatch.setattr(httpx, "Client", FakeHttpxClient)
    return sent


@pytest.fixture
def client():
    return PolarClient(api_key="polar_key", base_url="https://api.polar.test/v1/", webhook_secret="whsec")


def test_get_subscriptions_parses_both_spellings(monkeypatch, client):
    sent = _install(
        monkeypatch,
        [
            FakeResp(
                200,
                {
                    "items": [
                        {
                            "id": "sub_1",
                            "status": "active",
                            "customerId": "cus_1",
                            "product": {"id": "prod_pro"},
                            "prices": [{"id": "price_1", "recurringInterval": "year"}],
                            "currentPeriodEnd": "2026-05-01T00:00:00Z",
                            "cancelAtPeriodEnd": True,
                        },
                        {
                            "id": "sub_2",
                            "status": "past_due",
                            "customer_id": "cus_1",
                            "product_id": "prod_enterprise",
                            "recurring_interval": "month",
                        },
                    ]
                },
            )
        ],
    )

    subs = client.get_subscriptions("cus_1")

    assert sent[0]["method"] == "GET"
    assert sent[0]["url"] == "https://api.polar.test/v1/subscriptions/"
    assert sent[0]["params"] == {"customer_id": "cus_1", "limit": 100}
    assert sent[0]["headers"]["Authorization"] == "Bearer polar_key"

    first, second = subs
    assert first.customer_id == "cus_1"
    assert first.product_id == "prod_pro"
    assert first.price_id == "price_1"
    assert first.recurring_interval == "year"
    assert first.current_period_end == parse_datetime("2026-05-01T00:00:00+00:00")
    assert first.local_status() is SubscriptionStatus.canceling
    assert second.is_live is False
    assert second.local_status() is SubscriptionStatus.expired


def test_non_json_body_is_a_provider_error(monkeypatch, client):
    _install(monkeypatch, [TextResp(200, "<html>maintenance</html>")])

    with pytest.raises(ProviderError) as exc:
        client.get_subscriptions("cus_1")
    assert exc.value.provider_status == 200


def test_malformed_subscriptions_are_skipped(monkeypatch, client):
    _install(
        monkeypatch,
        [
            FakeResp(
                200,
                {"items": [{"status": "active"}, "garbage", {"id": "sub_3", "status": "active"}]},
            )
        ],
    )

    subs = client.get_subscriptions("cus_1")

    assert [s.id for s in subs] == ["sub_3"]


def test_malformed_customer_is_a_provider_error(monkeypatch, client):
    _install(monkeypatch, [FakeResp(200, {"items": [{"email": "learner@example.com"}]})])

    with pytest.raises(ProviderError):
        client.get_customer_by_email("learner@example.com")


def test_unreadable_listing_degrades_status_read(
    monkeypatch, client, db, make_user, provider_subscription, now, clock
):
    user = make_user(polar_customer_id="cus_1")
    sync_provider_subscription(db, user=user, subscription=provider_subscription(), now=now - timedelta(hours=2))
    _install(
        monkeypatch,
        [
            FakeResp(200, {"items": [{"id": "cus_1", "email": user.email}]}),
            TextResp(200, "<html>maintenance</html>"),
        ],
    )

    state = ReconciliationEngine(db, client, clock=clock).get_authoritative_state(user.id)

    assert state.from_cache is True
    assert state.warning == STALE_WARNING
    assert state.record.polar_subscription_id == "sub_1"


def test_local_status_mapping():
    assert ProviderSubscription(id="s", status="active").local_status() is SubscriptionStatus.active
    assert ProviderSubscription(id="s", status="trialing").local_status() is SubscriptionStatus.trialing
    assert ProviderSubscription(id="s", status="canceled").local_status() is SubscriptionStatus.canceled
    with pytest.raises(ValueError):
        ProviderSubscription.from_payload({"status": "active"})


def test_error_mapping(monkeypatch, client):
    _install(monkeypatch, [FakeResp(404, {"detail": "nope"})])
    with pytest.raises(NotFound):
        client.get_checkout_session("cs_missing")

    _install(monkeypatch, [FakeResp(422, {"detail": "bad product"})])
    with pytest.raises(ProviderError) as exc:
        client.switch_subscription_plan(subscription_id="sub_1", new_product_id="prod_x")
    assert exc.value.provider_status == 422


def test_reads_are_retried_on_outage(monkeypatch, client):
    sent = _install(
        monkeypatch,
        [
            FakeResp(503),
            httpx.ConnectError("connection refused"),
            FakeResp(200, [{"id": "cus_1", "email": "a@example.com"}]),
        ],
    )

    customer = client.get_customer_by_email("a@example.com")

    assert customer.id == "cus_1"
    assert len(sent) == 3


def test_reads_give_up_after_three_attempts(monkeypatch, client):
    sent = _install(monkeypatch, [FakeResp(500), FakeResp(502), FakeResp(503)])
    with pytest.raises(ProviderUnavailable):
        client.get_subscriptions("cus_1")
    assert len(sent) == 3


def test_writes_are_not_retried(monkeypatch, client):
    sent = _install(monkeypatch, [httpx.ReadTimeout("timed out")])
    with pytest.raises(ProviderUnavailable):
        client.cancel_subscription("sub_1", immediate=False)
    assert len(sent) == 1


def test_cancel_and_resume_requests(monkeypatch, client):
    sent = _install(
        monkeypatch,
        [
            FakeResp(204),
            FakeResp(200, {"id": "sub_1", "status": "canceled", "customer_id": "cus_1"}),
            FakeResp(200, {"id": "sub_1", "status": "active", "cancel_at_period_end": False}),
        ],
    )

    stub = client.cancel_subscription("sub_1", immediate=False)
    revoked = client.cancel_subscription("sub_1", immediate=True)
    resumed = client.resume_subscription("sub_1")

    assert stub.id == "sub_1" and stub.status == ""
    assert sent[0]["method"] == "PATCH"
    assert sent[0]["json"] == {"cancel_at_period_end": True}
    assert revoked.status == "canceled"
    assert sent[1]["method"] == "DELETE"
    assert resumed.status == "active"
    assert sent[2]["json"] == {"cancel_at_period_end": False}


def test_switch_request_payload(monkeypatch, client):
    sent = _install(monkeypatch, [FakeResp(200, {"id": "sub_1", "status": "active", "product_id": "prod_e"})])

    client.switch_subscription_plan(
        subscription_id="sub_1", new_product_id="prod_e", price_id="price_e", switch_at_period_end=True
    )

    assert sent[0]["url"].endswith("/subscriptions/sub_1")
    assert sent[0]["json"] == {
        "product_id": "prod_e",
        "proration_behavior": "next_period",
        "price_id": "price_e",
    }


def test_create_or_get_customer(monkeypatch, client):
    sent = _install(
        monkeypatch,
        [FakeResp(200, {"items": []}), FakeResp(201, {"id": "cus_new", "email": "b@example.com"})],
    )

    customer = client.create_or_get_customer("b@example.com", "Grace Hopper")

    assert customer.id == "cus_new"
    assert sent[1]["method"] == "POST"
    assert sent[1]["json"] == {"email": "b@example.com", "name": "Grace Hopper"}


def test_checkout_session_round(monkeypatch, client):
    sent = _install(
        monkeypatch,
        [
            FakeResp(
                201,
                {
                    "id": "cs_1",
                    "url": "https://polar.test/checkout/cs_1",
                    "status": "open",
                    "metadata": {"user_id": "user_1", "plan": "pro"},
                },
            )
        ],
    )

    session = client.create_checkout_session(
        product_id="prod_pro",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        customer_email="a@example.com",
        customer_id="cus_1",
        metadata={"user_id": "user_1", "plan": "pro"},
    )

    assert session.url == "https://polar.test/checkout/cs_1"
    assert session.metadata["plan"] == "pro"
    body = sent[0]["json"]
    assert body["products"] == ["prod_pro"]
    assert body["success_url"] == "https://app.test/ok"
    assert body["return_url"] == "https://app.test/cancel"
    assert body["customer_id"] == "cus_1"


def test_product_prices(monkeypatch, client):
    _install(
        monkeypatch,
        [
            FakeResp(
                200,
                {
                    "id": "prod_pro",
                    "prices": [
                        {"id": "p_m", "recurring_interval": "month"},
                        {"id": "p_y", "recurringInterval": "year", "intervalCount": 1},
                    ],
                },
            )
        ],
    )
    prices = client.get_product_prices("prod_pro")
    assert [(p.id, p.interval) for p in prices] == [("p_m", "month"), ("p_y", "year")]


def test_unconfigured_client_refuses_calls(monkeypatch):
    sent = _install(monkeypatch, [])
    client = PolarClient(api_key="", base_url="https://api.polar.test/v1")
    assert client.configured is False
    with pytest.raises(ProviderUnavailable):
        client.cancel_subscription("sub_1", immediate=True)
    assert sent == []


def test_webhook_signature(client):
    body = b'{"type":"subscription.created"}'
    digest = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(body, digest)
    assert client.verify_webhook_signature(body, f"sha256={digest}")
    assert not client.verify_webhook_signature(body, "sha256=deadbeef")
    assert not client.verify_webhook_signature(body, None)
    assert not client.verify_webhook_signature(b"tampered", digest)


def test_webhook_signature_without_secret():
    client = PolarClient(api_key="k", webhook_secret="")
    assert client.verify_webhook_signature(b"{}", None) is True
