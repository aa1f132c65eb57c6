"""
assetgate/features/subscriptions/store.py

Subscription persistence.

Every function takes the caller's Session so that multi-step mutations
(deactivate-then-create) commit or roll back as one transaction. Any write
that leaves a row with is_active=true deactivates the user's other active
rows in the same transaction: at most one active subscription per user.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from assetgate.core.config import settings
from assetgate.core.database import insert_ignore, subscriptions, utc_now, ensure_utc
from assetgate.models.plan import Plan
from assetgate.models.subscription import (
    ACTIVATING_STATUSES,
    ProviderStatus,
    Subscription,
    SubscriptionKind,
    SubscriptionStatus,
)
from assetgate.features.plans.service import period_end_for


logger = logging.getLogger("assetgate")


@dataclass(frozen=True)
class ProviderSubscriptionFields:
    """Absolute subscription state as reported by Stripe."""
    user_id: str
    plan_id: str
    status: ProviderStatus
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVATING_STATUSES


def _row_to_subscription(row) -> Subscription:
    if row.kind == SubscriptionKind.MANUAL.value:
        status = SubscriptionStatus.manual()
    else:
        status = SubscriptionStatus.managed(row.provider_status)
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=status,
        is_active=row.is_active,
        start_date=ensure_utc(row.start_date),
        end_date=ensure_utc(row.end_date),
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        cancel_at_period_end=row.cancel_at_period_end,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _status_columns(status: SubscriptionStatus) -> Dict[str, Any]:
    return {
        "kind": status.kind.value,
        "provider_status": status.provider_status.value if status.provider_status else None,
    }


def get_by_id(session: Session, subscription_id: int) -> Optional[Subscription]:
    row = session.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).first()
    return _row_to_subscription(row) if row else None


def get_by_provider_id(session: Session, provider_subscription_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.provider_subscription_id == provider_subscription_id)
    ).first()
    return _row_to_subscription(row) if row else None


def list_for_user(session: Session, user_id: str) -> List[Subscription]:
    rows = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
    ).all()
    return [_row_to_subscription(row) for row in rows]


def find_active_for_user(
    session: Session,
    user_id: str,
    at: datetime,
    *,
    past_due_grants_access: Optional[bool] = None,
) -> Optional[Subscription]:
    """
    Return the subscription granting access at `at`, if any.

    Predicate: is_active AND start_date <= at <= end_date AND (Manual OR
    provider status in {active, trialing}, plus past_due when the
    past-due policy grants access). Several matches mean the one-active
    invariant was broken; the most recently created wins and the anomaly
    is logged.
    """
    if past_due_grants_access is None:
        past_due_grants_access = settings.PAST_DUE_GRANTS_ACCESS
    granting = {s.value for s in ACTIVATING_STATUSES}
    if past_due_grants_access:
        granting.add(ProviderStatus.PAST_DUE.value)

    at = ensure_utc(at)
    rows = session.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.is_active.is_(True),
                subscriptions.c.start_date <= at,
                subscriptions.c.end_date >= at,
                or_(
                    subscriptions.c.kind == SubscriptionKind.MANUAL.value,
                    subscriptions.c.provider_status.in_(sorted(granting)),
                ),
            )
        )
        .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
    ).all()

    if not rows:
        return None
    if len(rows) > 1:
        logger.warning(
            "subscription.invariant_violation",
            extra={
                "user_id": user_id,
                "active_subscription_ids": [row.id for row in rows],
                "chosen_subscription_id": rows[0].id,
            },
        )
    return _row_to_subscription(rows[0])


def deactivate_all_active_for_user(
    session: Session,
    user_id: str,
    *,
    keep_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Set is_active=false on every active row for the user (except keep_id). Returns rows changed."""
    stmt = update(subscriptions).where(
        and_(subscriptions.c.user_id == user_id, subscriptions.c.is_active.is_(True))
    )
    if keep_id is not None:
        stmt = stmt.where(subscriptions.c.id != keep_id)
    result = session.execute(stmt.values(is_active=False, updated_at=ensure_utc(now) or utc_now()))
    return result.rowcount


def upsert_from_provider(
    session: Session,
    provider_subscription_id: str,
    fields: ProviderSubscriptionFields,
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Idempotent create-or-update keyed by the Stripe subscription id.

    The stored row is overwritten with the absolute state in `fields`;
    applying the same fields twice leaves identical state. The owning
    user of an existing row is never reassigned.
    """
    now = ensure_utc(now) or utc_now()
    period_start = ensure_utc(fields.current_period_start)
    period_end = ensure_utc(fields.current_period_end)
    values = {
        "plan_id": fields.plan_id,
        "provider_customer_id": fields.provider_customer_id,
        **_status_columns(SubscriptionStatus.managed(fields.status)),
        "is_active": fields.is_active,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": fields.cancel_at_period_end,
        "start_date": period_start or now,
        "end_date": period_end or period_start or now,
        "updated_at": now,
    }

    inserted = False
    if get_by_provider_id(session, provider_subscription_id) is None:
        inserted = insert_ignore(
            session,
            subscriptions,
            {
                **values,
                "user_id": fields.user_id,
                "provider_subscription_id": provider_subscription_id,
                "created_at": now,
            },
            ["provider_subscription_id"],
        )
    if not inserted:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.provider_subscription_id == provider_subscription_id)
            .values(**values)
        )

    subscription = get_by_provider_id(session, provider_subscription_id)
    if subscription.is_active:
        deactivate_all_active_for_user(session, subscription.user_id, keep_id=subscription.id, now=now)
    return subscription


def update_subscription(
    session: Session,
    subscription_id: int,
    *,
    status: Optional[SubscriptionStatus] = None,
    now: Optional[datetime] = None,
    **values: Any,
) -> Subscription:
    """Write selected columns of one subscription, keeping the one-active invariant."""
    now = ensure_utc(now) or utc_now()
    changes: Dict[str, Any] = {
        key: ensure_utc(value) if isinstance(value, datetime) else value
        for key, value in values.items()
    }
    if status is not None:
        changes.update(_status_columns(status))
    changes["updated_at"] = now
    session.execute(update(subscriptions).where(subscriptions.c.id == subscription_id).values(**changes))

    subscription = get_by_id(session, subscription_id)
    if subscription.is_active:
        deactivate_all_active_for_user(session, subscription.user_id, keep_id=subscription.id, now=now)
    return subscription


def mark_canceled(
    session: Session,
    provider_subscription_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """Deactivate and set status canceled, whatever the prior status. None if unknown."""
    existing = get_by_provider_id(session, provider_subscription_id)
    if existing is None:
        return None
    return update_subscription(
        session,
        existing.id,
        status=SubscriptionStatus.managed(ProviderStatus.CANCELED),
        is_active=False,
        now=now,
    )


def create_manual(
    session: Session,
    user_id: str,
    plan: Plan,
    *,
    start: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Admin assignment: deactivate prior subscriptions and create an active Manual one."""
    now = ensure_utc(now) or utc_now()
    start = ensure_utc(start) or now
    deactivate_all_active_for_user(session, user_id, now=now)
    result = session.execute(
        subscriptions.insert().values(
            user_id=user_id,
            plan_id=plan.plan_id,
            **_status_columns(SubscriptionStatus.manual()),
            is_active=True,
            cancel_at_period_end=False,
            start_date=start,
            end_date=period_end_for(start, plan.billing_cycle),
            created_at=now,
            updated_at=now,
        )
    )
    return get_by_id(session, result.inserted_primary_key[0])
