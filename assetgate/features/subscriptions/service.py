"""
Subscription management outside the webhook path.
- assign_subscription: admin grants a Manual subscription
- cancel_subscription: user cancels (provider-managed: at period end; manual: immediately)
- get_current_subscription: the caller's access-granting subscription, if any
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from assetgate.core.database import get_db_session, ensure_utc, utc_now
from assetgate.core.errors import NotFoundError, ValidationError
from assetgate.features.billing.provider import BillingProvider
from assetgate.features.plans.service import require_plan
from assetgate.features.subscriptions import store
from assetgate.features.users.service import require_user
from assetgate.models.subscription import Subscription


logger = logging.getLogger("assetgate")


def assign_subscription(
    user_id: str,
    plan_id: str,
    *,
    assigned_by: Optional[str] = None,
    start: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Deactivate the user's subscriptions and create an active Manual one, atomically."""
    now = ensure_utc(now) or utc_now()
    require_user(user_id)
    with get_db_session() as session:
        plan = require_plan(plan_id, session)
        if not plan.is_active:
            raise ValidationError(f"Plan is not active: {plan_id}")
        subscription = store.create_manual(session, user_id, plan, start=start, now=now)

    logger.info(
        "subscription.assigned",
        extra={
            "user_id": user_id,
            "plan_id": plan_id,
            "assigned_by": assigned_by,
            "subscription_id": subscription.id,
        },
    )
    return subscription


def cancel_subscription(user_id: str, provider: BillingProvider, now: Optional[datetime] = None) -> Subscription:
    """
    Cancel the caller's current subscription.

    Provider-managed subscriptions are flagged cancel_at_period_end at the
    provider; access continues until the provider's deletion event.
    Manual subscriptions are deactivated here.
    """
    now = ensure_utc(now) or utc_now()
    with get_db_session() as session:
        current = store.find_active_for_user(session, user_id, now)
        if current is None:
            raise NotFoundError("No active subscription to cancel")
        if current.status.is_manual:
            return store.update_subscription(session, current.id, is_active=False, now=now)

    # No transaction is held across the Stripe call
    provider.cancel_at_period_end(current.provider_subscription_id)
    with get_db_session() as session:
        updated = store.update_subscription(session, current.id, cancel_at_period_end=True, now=now)

    logger.info(
        "subscription.cancel_requested",
        extra={"user_id": user_id, "subscription_id": updated.id},
    )
    return updated


def get_current_subscription(user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
    with get_db_session() as session:
        return store.find_active_for_user(session, user_id, ensure_utc(now) or utc_now())


def subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "planId": subscription.plan_id,
        "status": subscription.status.label(),
        "isActive": subscription.is_active,
        "startDate": subscription.start_date.isoformat(),
        "endDate": subscription.end_date.isoformat(),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "providerSubscriptionId": subscription.provider_subscription_id,
    }
