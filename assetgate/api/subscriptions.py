"""
Subscription API routes.

- GET  /subscriptions/plans: active plans
- GET  /subscriptions/me: caller's current subscription
- POST /subscriptions/assign: admin assigns a plan (manual subscription)
- POST /subscriptions/cancel: caller cancels
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from assetgate.core.auth import get_current_user, require_admin
from assetgate.features.billing.provider import BillingProvider
from assetgate.features.billing.stripe_provider import get_billing_provider
from assetgate.features.plans.service import list_plans
from assetgate.features.subscriptions.service import (
    assign_subscription,
    cancel_subscription,
    get_current_subscription,
    subscription_to_dict,
)
from assetgate.models.user import User


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class AssignRequest(BaseModel):
    user_id: str
    plan_id: str


@router.get("/plans")
def get_plans():
    return {
        "plans": [
            {
                "id": plan.plan_id,
                "name": plan.name,
                "dailyDownloadLimit": plan.daily_download_limit,
                "billingCycle": plan.billing_cycle.value,
            }
            for plan in list_plans()
        ]
    }


@router.get("/me")
def get_my_subscription(user: User = Depends(get_current_user)):
    subscription = get_current_subscription(user.user_id)
    return {"subscription": subscription_to_dict(subscription) if subscription else None}


@router.post("/assign")
def assign(request: AssignRequest, admin: User = Depends(require_admin)):
    """Admin: replace the user's subscriptions with a manual one on `plan_id`."""
    subscription = assign_subscription(request.user_id, request.plan_id, assigned_by=admin.user_id)
    return {"subscription": subscription_to_dict(subscription)}


@router.post("/cancel")
def cancel(user: User = Depends(get_current_user), provider: BillingProvider = Depends(get_billing_provider)):
    subscription = cancel_subscription(user.user_id, provider)
    return {"subscription": subscription_to_dict(subscription)}
