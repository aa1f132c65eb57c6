"""
assetgate/models/subscription.py

Subscription model and its status variant.

A subscription is either Manual (assigned by an admin, no Stripe linkage)
or Managed by Stripe, in which case it carries the provider's status.
"""

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, model_validator


class ProviderStatus(str, Enum):
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


# Statuses for which a freshly written subscription is flagged is_active
ACTIVATING_STATUSES: FrozenSet[ProviderStatus] = frozenset({ProviderStatus.ACTIVE, ProviderStatus.TRIALING})

TERMINAL_STATUSES: FrozenSet[ProviderStatus] = frozenset({ProviderStatus.CANCELED, ProviderStatus.INCOMPLETE_EXPIRED})


class SubscriptionKind(str, Enum):
    MANUAL = "manual"
    MANAGED = "managed"


class SubscriptionStatus(BaseModel):
    """Tagged variant: Manual | Managed(ProviderStatus)."""
    model_config = ConfigDict(frozen=True)

    kind: SubscriptionKind
    provider_status: Optional[ProviderStatus] = None

    @model_validator(mode="after")
    def _check_variant(self) -> "SubscriptionStatus":
        if self.kind == SubscriptionKind.MANUAL and self.provider_status is not None:
            raise ValueError("manual subscriptions carry no provider status")
        if self.kind == SubscriptionKind.MANAGED and self.provider_status is None:
            raise ValueError("managed subscriptions require a provider status")
        return self

    @classmethod
    def manual(cls) -> "SubscriptionStatus":
        return cls(kind=SubscriptionKind.MANUAL)

    @classmethod
    def managed(cls, status) -> "SubscriptionStatus":
        return cls(kind=SubscriptionKind.MANAGED, provider_status=ProviderStatus(status))

    @property
    def is_manual(self) -> bool:
        return self.kind == SubscriptionKind.MANUAL

    @property
    def is_terminal(self) -> bool:
        return self.provider_status in TERMINAL_STATUSES

    def label(self) -> str:
        return "manual" if self.is_manual else self.provider_status.value


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    is_active: bool
    start_date: datetime
    end_date: datetime
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
