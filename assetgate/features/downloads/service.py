"""
assetgate/features/downloads/service.py

Download gate.

Handles:
- Asset resolution and availability
- Entitlement evaluation and the atomic count-and-record
- Download status for the caller (no writes)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from assetgate.core.database import get_db_session, ensure_utc, utc_now
from assetgate.core.errors import AssetUnavailableError
from assetgate.features.catalog.service import build_download_url, increment_download_count, require_asset
from assetgate.features.entitlements.service import DenialReason, EntitlementDecision, evaluate
from assetgate.features.usage.service import count_since, day_start, record, record_within_limit
from assetgate.models.asset import Asset
from assetgate.models.user import User


logger = logging.getLogger("assetgate")


@dataclass(frozen=True)
class DownloadResult:
    granted: bool
    reason: Optional[DenialReason]
    resets_at: datetime
    asset: Asset
    download_url: Optional[str] = None
    remaining: Optional[int] = None  # None = unbounded (admins) or denied


def _denied(asset: Asset, reason: DenialReason, decision: EntitlementDecision) -> DownloadResult:
    return DownloadResult(granted=False, reason=reason, resets_at=decision.resets_at, asset=asset)


def attempt_download(
    user: User,
    asset_id: str,
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> DownloadResult:
    """
    Gate one download attempt.

    Denials come back as a result with a reason and write nothing. A grant
    appends exactly one usage record and bumps the asset's download count
    in the same transaction.

    Raises:
        NotFoundError: unknown asset
        AssetUnavailableError: asset exists but is inactive
    """
    now = ensure_utc(now) or utc_now()

    with get_db_session() as session:
        asset = require_asset(asset_id, session)
        if not asset.is_active:
            raise AssetUnavailableError(asset_id)

        decision = evaluate(user, now, session=session)
        if not decision.allowed:
            return _denied(asset, decision.reason, decision)

        if decision.is_admin:
            record(user.user_id, asset_id, metadata, now, session=session)
            remaining = None
        else:
            usage = record_within_limit(
                session, user.user_id, asset_id, decision.daily_limit, now, metadata
            )
            if usage is None:
                logger.info(
                    "download.limit_race_lost",
                    extra={"user_id": user.user_id, "asset_id": asset_id, "daily_limit": decision.daily_limit},
                )
                return _denied(asset, DenialReason.LIMIT_REACHED, decision)
            used_after = count_since(user.user_id, day_start(now), session=session)
            remaining = max(0, decision.daily_limit - used_after)

        increment_download_count(session, asset_id)

    logger.info(
        "download.granted",
        extra={"user_id": user.user_id, "asset_id": asset_id, "remaining": remaining},
    )
    return DownloadResult(
        granted=True,
        reason=None,
        resets_at=decision.resets_at,
        asset=asset,
        download_url=build_download_url(asset),
        remaining=remaining,
    )


def download_status(user: User, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current quota position for the caller, shaped for the status endpoint."""
    decision = evaluate(user, now)
    subscription = None
    if decision.subscription is not None:
        subscription = {
            "planName": decision.plan.name,
            "expiresAt": decision.subscription.end_date.isoformat(),
            "status": decision.subscription.status.label(),
        }
    return {
        "isAdmin": decision.is_admin,
        "hasSubscription": decision.subscription is not None,
        "canDownload": decision.allowed,
        "remainingDownloads": decision.remaining,
        "dailyDownloads": decision.used,
        "downloadLimit": decision.daily_limit,
        "subscription": subscription,
        "resetsAt": decision.resets_at.isoformat(),
    }
