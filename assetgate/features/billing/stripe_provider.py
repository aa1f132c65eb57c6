"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe SDK.
Handles webhook signature verification and event parsing.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from assetgate.core.config import settings
from assetgate.core.errors import BillingProviderError, WebhookVerificationError
from assetgate.features.billing.provider import (
    BillingEvent,
    InvoiceSnapshot,
    SubscriptionSnapshot,
)


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def parse_subscription(obj: Dict[str, Any]) -> SubscriptionSnapshot:
    """
    Normalize a Stripe subscription object.

    Newer API versions moved current_period_* onto the subscription items;
    both placements are accepted.
    """
    item = _first_item(obj)
    price = item.get("price") or {}
    return SubscriptionSnapshot(
        subscription_id=obj["id"],
        customer_id=_ref_id(obj.get("customer")),
        status=obj.get("status") or "",
        price_id=price.get("id") if isinstance(price, dict) else price,
        current_period_start=_ts(obj.get("current_period_start") or item.get("current_period_start")),
        current_period_end=_ts(obj.get("current_period_end") or item.get("current_period_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        trial_end=_ts(obj.get("trial_end")),
        metadata=dict(obj.get("metadata") or {}),
    )


def parse_invoice(obj: Dict[str, Any]) -> InvoiceSnapshot:
    """Normalize a Stripe invoice object; the subscription link lives in one of two places."""
    subscription_id = _ref_id(obj.get("subscription"))
    if not subscription_id:
        details = (obj.get("parent") or {}).get("subscription_details") or {}
        subscription_id = _ref_id(details.get("subscription"))

    lines = (obj.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    return InvoiceSnapshot(
        invoice_id=obj.get("id"),
        subscription_id=subscription_id,
        customer_id=_ref_id(obj.get("customer")),
        period_start=_ts(period.get("start") or obj.get("period_start")),
        period_end=_ts(period.get("end") or obj.get("period_end")),
    )


def parse_event(payload: Dict[str, Any]) -> BillingEvent:
    """Parse a (verified) Stripe event payload into a BillingEvent."""
    obj = (payload.get("data") or {}).get("object") or {}
    object_type = obj.get("object")
    subscription = parse_subscription(obj) if object_type == "subscription" and obj.get("id") else None
    invoice = parse_invoice(obj) if object_type == "invoice" else None
    return BillingEvent(
        event_id=payload["id"],
        event_type=payload["type"],
        subscription=subscription,
        invoice=invoice,
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY); only API calls need it
            webhook_secret: Stripe webhook signing secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance: Max signature age in seconds (defaults to STRIPE_WEBHOOK_TOLERANCE_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    def construct_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret, tolerance=self.tolerance)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}")

        try:
            return parse_event(json.loads(body))
        except (KeyError, TypeError, ValueError) as e:
            raise WebhookVerificationError(f"Malformed event: {e}")

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        """Set cancel_at_period_end on the Stripe subscription."""
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        try:
            stripe.Subscription.modify(
                provider_subscription_id,
                api_key=self.secret_key,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe cancellation failed: {e}")


def get_billing_provider() -> StripeProvider:
    """FastAPI dependency; tests override it with a fake provider."""
    return StripeProvider()
