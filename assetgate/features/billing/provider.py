"""
Billing provider protocol.

Defines the interface the webhook reconciler and the cancellation path
depend on, plus the normalized event shapes a provider hands back.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Absolute state of a provider subscription as carried by an event."""
    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceSnapshot:
    invoice_id: Optional[str]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class BillingEvent:
    """A verified webhook event, normalized."""
    event_id: str
    event_type: str
    subscription: Optional[SubscriptionSnapshot] = None
    invoice: Optional[InvoiceSnapshot] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and parsing
    - Scheduling cancellation at period end
    """

    def construct_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify the webhook signature over the exact raw body and parse it.

        Raises:
            WebhookVerificationError: signature missing, invalid or stale, or body unparseable
        """
        ...

    def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        """
        Ask the provider to cancel the subscription when the current period ends.

        Raises:
            BillingProviderError: the provider call failed
        """
        ...
