"""Stripe event builders and signing helpers shared by the webhook tests."""
import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

TEST_JWT_SECRET = "test-jwt-secret"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

# A Wednesday, well away from any day boundary
FIXED_NOW = datetime(2025, 3, 12, 10, 30, tzinfo=timezone.utc)


def sign_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header for `payload`."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _epoch(value):
    return int(value.timestamp()) if isinstance(value, datetime) else value


def subscription_event(
    event_type,
    subscription_id="sub_123",
    *,
    event_id=None,
    customer="cus_123",
    status="active",
    price_id="price_basic",
    period_start=FIXED_NOW - timedelta(days=1),
    period_end=FIXED_NOW + timedelta(days=29),
    cancel_at_period_end=False,
    metadata=None,
    trial_end=None,
    periods_on_items=False,
):
    item = {"id": "si_1", "price": {"id": price_id}}
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"object": "list", "data": [item]},
        "metadata": metadata or {},
    }
    periods = {"current_period_start": _epoch(period_start), "current_period_end": _epoch(period_end)}
    if periods_on_items:
        item.update(periods)
    else:
        obj.update(periods)
    if trial_end is not None:
        obj["trial_end"] = _epoch(trial_end)
    return {
        "id": event_id or f"evt_{event_type}_{subscription_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def invoice_event(
    event_type,
    subscription_id="sub_123",
    *,
    event_id=None,
    customer="cus_123",
    period_start=None,
    period_end=None,
    nested_subscription=False,
):
    obj = {"id": "in_123", "object": "invoice", "customer": customer}
    if subscription_id and nested_subscription:
        obj["parent"] = {"subscription_details": {"subscription": subscription_id}}
    else:
        obj["subscription"] = subscription_id
    if period_start is not None and period_end is not None:
        obj["lines"] = {"data": [{"period": {"start": _epoch(period_start), "end": _epoch(period_end)}}]}
    return {
        "id": event_id or f"evt_{event_type}_{subscription_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }
