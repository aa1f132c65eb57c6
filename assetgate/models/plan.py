"""
assetgate/models/plan.py

Plan model: a download tier correlated to a Stripe price.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class BillingCycle(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Plan(BaseModel):
    """
    Plan represents a download tier.

    daily_download_limit is a hard ceiling; 0 means no downloads at all.
    Unlimited access is granted by role (ADMIN), never by plan.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    daily_download_limit: int = Field(ge=0)
    provider_price_id: Optional[str] = None
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_active: bool = True
    created_at: Optional[datetime] = None
