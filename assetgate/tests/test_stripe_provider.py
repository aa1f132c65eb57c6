import json
import time
from unittest.mock import patch

import pytest
import stripe

from assetgate.core.errors import BillingProviderError, WebhookVerificationError
from assetgate.features.billing.stripe_provider import StripeProvider, parse_invoice, parse_subscription
from assetgate.tests.factories import FIXED_NOW, TEST_WEBHOOK_SECRET, sign_payload, subscription_event


def _body(event):
    return json.dumps(event).encode("utf-8")


def test_construct_event_accepts_valid_signature():
    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET)
    body = _body(subscription_event("customer.subscription.created", event_id="evt_ok"))

    event = provider.construct_event({"stripe-signature": sign_payload(body)}, body)

    assert event.event_id == "evt_ok"
    assert event.subscription.subscription_id == "sub_123"
    assert event.subscription.price_id == "price_basic"
    assert event.subscription.current_period_start == FIXED_NOW.replace(day=11)


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"stripe-signature": "t=1,v1=deadbeef"},
        {"stripe-signature": sign_payload(b"{}", secret="whsec_other")},
    ],
)
def test_construct_event_rejects_bad_signatures(headers):
    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET)
    body = _body(subscription_event("customer.subscription.created"))

    with pytest.raises(WebhookVerificationError):
        provider.construct_event(headers, body)


def test_construct_event_rejects_tampered_body():
    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET)
    body = _body(subscription_event("customer.subscription.created", status="incomplete"))
    header = sign_payload(body)
    tampered = body.replace(b"incomplete", b"active")

    with pytest.raises(WebhookVerificationError):
        provider.construct_event({"stripe-signature": header}, tampered)


def test_construct_event_rejects_stale_signature():
    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET, tolerance=300)
    body = _body(subscription_event("customer.subscription.created"))

    with pytest.raises(WebhookVerificationError):
        provider.construct_event({"stripe-signature": sign_payload(body, timestamp=time.time() - 3600)}, body)


def test_construct_event_requires_configured_secret(test_settings):
    test_settings.STRIPE_WEBHOOK_SECRET = None
    provider = StripeProvider()

    with pytest.raises(WebhookVerificationError):
        provider.construct_event({"stripe-signature": "t=1,v1=x"}, b"{}")


def test_parse_subscription_accepts_expanded_customer():
    snapshot = parse_subscription(
        {
            "id": "sub_9",
            "object": "subscription",
            "customer": {"id": "cus_9", "object": "customer"},
            "status": "trialing",
            "items": {"data": [{"price": {"id": "price_9"}, "current_period_end": 1741800000}]},
        }
    )

    assert snapshot.customer_id == "cus_9"
    assert snapshot.price_id == "price_9"
    assert snapshot.current_period_start is None
    assert int(snapshot.current_period_end.timestamp()) == 1741800000
    assert snapshot.cancel_at_period_end is False


def test_parse_invoice_falls_back_to_invoice_period():
    snapshot = parse_invoice(
        {
            "id": "in_1",
            "object": "invoice",
            "parent": {"subscription_details": {"subscription": "sub_77"}},
            "period_start": 1741700000,
            "period_end": 1741800000,
        }
    )

    assert snapshot.subscription_id == "sub_77"
    assert int(snapshot.period_start.timestamp()) == 1741700000
    assert int(snapshot.period_end.timestamp()) == 1741800000


def test_cancel_at_period_end_calls_stripe():
    provider = StripeProvider(secret_key="sk_test_123", webhook_secret=TEST_WEBHOOK_SECRET)

    with patch("stripe.Subscription.modify") as modify:
        provider.cancel_at_period_end("sub_123")

    modify.assert_called_once_with("sub_123", api_key="sk_test_123", cancel_at_period_end=True)


def test_cancel_at_period_end_wraps_stripe_errors():
    provider = StripeProvider(secret_key="sk_test_123", webhook_secret=TEST_WEBHOOK_SECRET)

    with patch("stripe.Subscription.modify", side_effect=stripe.StripeError("boom")):
        with pytest.raises(BillingProviderError):
            provider.cancel_at_period_end("sub_123")


def test_cancel_requires_secret_key(test_settings):
    test_settings.STRIPE_SECRET_KEY = None
    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET)

    with pytest.raises(BillingProviderError):
        provider.cancel_at_period_end("sub_123")
