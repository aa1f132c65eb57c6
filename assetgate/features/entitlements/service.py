"""
assetgate/features/entitlements/service.py

Entitlement evaluation for downloads.

Decides, for a user at an instant, whether one more download is allowed.
Pure read: nothing here writes. The download gate re-checks the limit
atomically when it records the download.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
import logging
from sqlalchemy.orm import Session

from assetgate.core.database import get_db_session, ensure_utc, utc_now
from assetgate.features.plans.service import require_plan
from assetgate.features.subscriptions.store import find_active_for_user
from assetgate.features.usage.service import count_since, day_start, next_day_start
from assetgate.models.plan import Plan
from assetgate.models.subscription import Subscription
from assetgate.models.user import User


logger = logging.getLogger("assetgate")


class DenialReason(str, Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    LIMIT_REACHED = "LIMIT_REACHED"
    ASSET_UNAVAILABLE = "ASSET_UNAVAILABLE"


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[DenialReason]
    is_admin: bool
    used: int
    resets_at: datetime
    daily_limit: Optional[int] = None  # None = unbounded (admins)
    plan: Optional[Plan] = None
    subscription: Optional[Subscription] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.daily_limit is None:
            return None
        return max(0, self.daily_limit - self.used)


def _evaluate(session: Session, user: User, now: datetime) -> EntitlementDecision:
    used = count_since(user.user_id, day_start(now), session=session)
    resets_at = next_day_start(now)

    if user.is_admin:
        return EntitlementDecision(allowed=True, reason=None, is_admin=True, used=used, resets_at=resets_at)

    subscription = find_active_for_user(session, user.user_id, now)
    if subscription is None:
        return EntitlementDecision(
            allowed=False,
            reason=DenialReason.NO_SUBSCRIPTION,
            is_admin=False,
            used=used,
            resets_at=resets_at,
        )

    plan = require_plan(subscription.plan_id, session)
    allowed = used < plan.daily_download_limit
    return EntitlementDecision(
        allowed=allowed,
        reason=None if allowed else DenialReason.LIMIT_REACHED,
        is_admin=False,
        used=used,
        resets_at=resets_at,
        daily_limit=plan.daily_download_limit,
        plan=plan,
        subscription=subscription,
    )


def evaluate(user: User, now: Optional[datetime] = None, session: Optional[Session] = None) -> EntitlementDecision:
    """
    Evaluate whether `user` may download at `now`.

    Order:
    1. ADMIN -> allowed, unbounded
    2. No active subscription -> NO_SUBSCRIPTION
    3. used (this quota day) < plan.daily_download_limit -> allowed, else LIMIT_REACHED

    Raises:
        NotFoundError: the active subscription references a missing plan
    """
    now = ensure_utc(now) or utc_now()
    if session is not None:
        decision = _evaluate(session, user, now)
    else:
        with get_db_session() as own_session:
            decision = _evaluate(own_session, user, now)

    if not decision.allowed:
        logger.info(
            "entitlement.denied",
            extra={
                "user_id": user.user_id,
                "reason": decision.reason.value,
                "used": decision.used,
                "daily_limit": decision.daily_limit,
            },
        )
    return decision
