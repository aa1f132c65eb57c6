"""
assetgate/features/plans/service.py

Plan directory.

Handles:
- Plan seeding (basic, standard, premium and yearly variants)
- Plan lookup by id and by Stripe price id
- Billing-cycle period arithmetic for manually assigned subscriptions
"""

import calendar
import os
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from assetgate.core.database import get_db_session, insert_ignore, plans, utc_now, ensure_utc
from assetgate.core.errors import NotFoundError
from assetgate.models.plan import BillingCycle, Plan


# Default plan configurations; price ids come from the environment
DEFAULT_PLANS = {
    "basic": {
        "name": "Basic",
        "daily_download_limit": 3,
        "billing_cycle": BillingCycle.MONTHLY,
        "price_env": "STRIPE_PRICE_BASIC",
    },
    "standard": {
        "name": "Standard",
        "daily_download_limit": 7,
        "billing_cycle": BillingCycle.MONTHLY,
        "price_env": "STRIPE_PRICE_STANDARD",
    },
    "premium": {
        "name": "Premium",
        "daily_download_limit": 10,
        "billing_cycle": BillingCycle.MONTHLY,
        "price_env": "STRIPE_PRICE_PREMIUM",
    },
    "basic_yearly": {
        "name": "Basic Yearly",
        "daily_download_limit": 5,
        "billing_cycle": BillingCycle.YEARLY,
        "price_env": "STRIPE_PRICE_BASIC_YEARLY",
    },
    "standard_yearly": {
        "name": "Standard Yearly",
        "daily_download_limit": 7,
        "billing_cycle": BillingCycle.YEARLY,
        "price_env": "STRIPE_PRICE_STANDARD_YEARLY",
    },
    "premium_yearly": {
        "name": "Premium Yearly",
        "daily_download_limit": 10,
        "billing_cycle": BillingCycle.YEARLY,
        "price_env": "STRIPE_PRICE_PREMIUM_YEARLY",
    },
}


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        daily_download_limit=row.daily_download_limit,
        provider_price_id=row.provider_price_id,
        billing_cycle=BillingCycle(row.billing_cycle),
        is_active=row.is_active,
        created_at=ensure_utc(row.created_at),
    )


def seed_plans() -> None:
    """
    Seed default plans into database (idempotent).

    Existing plans are left untouched so admin edits survive restarts.
    """
    now = utc_now()
    with get_db_session() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            insert_ignore(
                session,
                plans,
                {
                    "plan_id": plan_id,
                    "name": config["name"],
                    "daily_download_limit": config["daily_download_limit"],
                    "billing_cycle": config["billing_cycle"].value,
                    "provider_price_id": os.getenv(config["price_env"]) or None,
                    "is_active": True,
                    "created_at": now,
                },
                ["plan_id"],
            )


def upsert_plan(
    plan_id: str,
    name: str,
    daily_download_limit: int,
    *,
    provider_price_id: Optional[str] = None,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    is_active: bool = True,
) -> Plan:
    """Create or edit a plan (admin path)."""
    plan = Plan(
        plan_id=plan_id,
        name=name,
        daily_download_limit=daily_download_limit,
        provider_price_id=provider_price_id,
        billing_cycle=billing_cycle,
        is_active=is_active,
    )
    values = {
        "name": plan.name,
        "daily_download_limit": plan.daily_download_limit,
        "provider_price_id": plan.provider_price_id,
        "billing_cycle": plan.billing_cycle.value,
        "is_active": plan.is_active,
    }
    with get_db_session() as session:
        inserted = insert_ignore(session, plans, {"plan_id": plan_id, "created_at": utc_now(), **values}, ["plan_id"])
        if not inserted:
            session.execute(update(plans).where(plans.c.plan_id == plan_id).values(**values))
    return get_plan(plan_id)


def get_plan(plan_id: str, session: Optional[Session] = None) -> Optional[Plan]:
    """Get plan by ID."""
    if session is not None:
        row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        return _row_to_plan(row) if row else None
    with get_db_session() as own_session:
        return get_plan(plan_id, own_session)


def require_plan(plan_id: str, session: Optional[Session] = None) -> Plan:
    plan = get_plan(plan_id, session)
    if plan is None:
        raise NotFoundError(f"Plan not found: {plan_id}")
    return plan


def get_plan_by_price_id(session: Session, price_id: Optional[str]) -> Optional[Plan]:
    """Resolve the plan correlated to a Stripe price id."""
    if not price_id:
        return None
    row = session.execute(select(plans).where(plans.c.provider_price_id == price_id)).first()
    return _row_to_plan(row) if row else None


def list_plans(include_inactive: bool = False) -> List[Plan]:
    with get_db_session() as session:
        query = select(plans).order_by(plans.c.daily_download_limit, plans.c.plan_id)
        if not include_inactive:
            query = query.where(plans.c.is_active.is_(True))
        return [_row_to_plan(row) for row in session.execute(query).all()]


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for(start: datetime, billing_cycle: BillingCycle) -> datetime:
    """End of one billing period starting at `start` (month ends clamp, e.g. Jan 31 -> Feb 28)."""
    cycle = BillingCycle(billing_cycle)
    if cycle == BillingCycle.WEEKLY:
        return start + timedelta(days=7)
    if cycle == BillingCycle.YEARLY:
        return _add_months(start, 12)
    return _add_months(start, 1)
