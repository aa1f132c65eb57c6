"""
assetgate/features/usage/service.py

Usage accounting service.

Handles:
- Quota-day boundaries (local midnight in QUOTA_TIMEZONE)
- Usage record emission
- Daily counting over the append-only usage log
- The atomic bounded increment used by the download gate
- Download history and admin download statistics
"""

from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.orm import Session

from assetgate.core.config import settings
from assetgate.core.database import (
    assets,
    daily_usage_counters,
    ensure_utc,
    get_db_session,
    insert_ignore,
    usage_records,
    utc_now,
)
from assetgate.models.usage_record import UsageRecord


def _quota_zone() -> ZoneInfo:
    return ZoneInfo(settings.QUOTA_TIMEZONE)


def quota_day(now: datetime) -> date:
    """Calendar date of `now` in the quota timezone."""
    return ensure_utc(now).astimezone(_quota_zone()).date()


def _local_midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=_quota_zone()).astimezone(timezone.utc)


def day_start(now: datetime) -> datetime:
    """Start of the quota day containing `now`, as a UTC instant."""
    return _local_midnight_utc(quota_day(now))


def next_day_start(now: datetime) -> datetime:
    """Start of the following quota day (the instant counters reset)."""
    return _local_midnight_utc(quota_day(now) + timedelta(days=1))


def _plus_one_local_day(start: datetime) -> datetime:
    zone = _quota_zone()
    local = ensure_utc(start).astimezone(zone).replace(tzinfo=None) + timedelta(days=1)
    return local.replace(tzinfo=zone).astimezone(timezone.utc)


def _count_in_window(session: Session, user_id: str, start: datetime) -> int:
    start = ensure_utc(start)
    end = _plus_one_local_day(start)
    return session.execute(
        select(func.count())
        .select_from(usage_records)
        .where(
            and_(
                usage_records.c.user_id == user_id,
                usage_records.c.occurred_at >= start,
                usage_records.c.occurred_at < end,
            )
        )
    ).scalar_one()


def count_since(user_id: str, start: datetime, session: Optional[Session] = None) -> int:
    """
    Count usage records with start <= occurred_at < start + 1 day.

    Args:
        user_id: User to count for
        start: Window start; normally day_start(now)
        session: Optional session to read within an open transaction
    """
    if session is not None:
        return _count_in_window(session, user_id, start)
    with get_db_session() as own_session:
        return _count_in_window(own_session, user_id, start)


def _insert_record(
    session: Session,
    user_id: str,
    asset_id: str,
    occurred_at: datetime,
    metadata: Optional[Dict[str, Any]],
) -> UsageRecord:
    metadata = metadata or {}
    result = session.execute(
        insert(usage_records).values(
            user_id=user_id,
            asset_id=asset_id,
            occurred_at=occurred_at,
            ip_address=metadata.get("ip_address"),
            user_agent=metadata.get("user_agent"),
        )
    )
    return UsageRecord(
        id=result.inserted_primary_key[0],
        user_id=user_id,
        asset_id=asset_id,
        occurred_at=occurred_at,
        ip_address=metadata.get("ip_address"),
        user_agent=metadata.get("user_agent"),
    )


def _ensure_counter(session: Session, user_id: str, now: datetime) -> date:
    """Create the (user, day) counter if missing, seeded from the usage log."""
    day = quota_day(now)
    seed = _count_in_window(session, user_id, day_start(now))
    insert_ignore(
        session,
        daily_usage_counters,
        {"user_id": user_id, "day": day, "count": seed, "updated_at": now},
        ["user_id", "day"],
    )
    return day


def _record(session: Session, user_id: str, asset_id: str, metadata: Optional[Dict[str, Any]], now: datetime) -> UsageRecord:
    day = _ensure_counter(session, user_id, now)
    session.execute(
        update(daily_usage_counters)
        .where(and_(daily_usage_counters.c.user_id == user_id, daily_usage_counters.c.day == day))
        .values(count=daily_usage_counters.c.count + 1, updated_at=now)
    )
    return _insert_record(session, user_id, asset_id, now, metadata)


def record(
    user_id: str,
    asset_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> UsageRecord:
    """
    Append a usage record unconditionally (admin downloads, backfills).

    Visible to count_since immediately after return (or after the caller's
    transaction commits when `session` is given).
    """
    now = ensure_utc(now) or utc_now()
    if session is not None:
        return _record(session, user_id, asset_id, metadata, now)
    with get_db_session() as own_session:
        return _record(own_session, user_id, asset_id, metadata, now)


def record_within_limit(
    session: Session,
    user_id: str,
    asset_id: str,
    limit: int,
    now: datetime,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[UsageRecord]:
    """
    Atomically count-and-record: append a record only while today's count < limit.

    The conditional UPDATE on the per-day counter serializes concurrent
    callers on the counter row, so at most `limit` records exist per user
    per quota day. Returns None when the limit was already reached.
    """
    now = ensure_utc(now)
    day = _ensure_counter(session, user_id, now)
    result = session.execute(
        update(daily_usage_counters)
        .where(
            and_(
                daily_usage_counters.c.user_id == user_id,
                daily_usage_counters.c.day == day,
                daily_usage_counters.c.count < limit,
            )
        )
        .values(count=daily_usage_counters.c.count + 1, updated_at=now)
    )
    if result.rowcount != 1:
        return None
    return _insert_record(session, user_id, asset_id, now, metadata)


def list_history(user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    """Paginated download history, newest first, with asset names."""
    page = max(1, page)
    limit = max(1, min(limit, 100))
    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(usage_records).where(usage_records.c.user_id == user_id)
        ).scalar_one()
        rows = session.execute(
            select(
                usage_records.c.id,
                usage_records.c.asset_id,
                usage_records.c.occurred_at,
                assets.c.name.label("asset_name"),
                assets.c.thumbnail,
            )
            .select_from(usage_records.outerjoin(assets, assets.c.asset_id == usage_records.c.asset_id))
            .where(usage_records.c.user_id == user_id)
            .order_by(usage_records.c.occurred_at.desc(), usage_records.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

    return {
        "downloads": [
            {
                "id": row.id,
                "assetId": row.asset_id,
                "assetName": row.asset_name,
                "thumbnail": row.thumbnail,
                "downloadedAt": ensure_utc(row.occurred_at).isoformat(),
            }
            for row in rows
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def download_stats(days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Aggregate downloads over the last `days` quota days.

    Returns totals, top assets, top users and a per-day breakdown keyed by
    quota-day date.
    """
    now = ensure_utc(now) or utc_now()
    days = max(1, days)
    since = day_start(now) - timedelta(days=days - 1)
    window = usage_records.c.occurred_at >= since

    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(usage_records).where(window)
        ).scalar_one()
        top_assets = session.execute(
            select(usage_records.c.asset_id, assets.c.name, func.count().label("downloads"))
            .select_from(usage_records.outerjoin(assets, assets.c.asset_id == usage_records.c.asset_id))
            .where(window)
            .group_by(usage_records.c.asset_id, assets.c.name)
            .order_by(func.count().desc(), usage_records.c.asset_id)
            .limit(10)
        ).all()
        top_users = session.execute(
            select(usage_records.c.user_id, func.count().label("downloads"))
            .where(window)
            .group_by(usage_records.c.user_id)
            .order_by(func.count().desc(), usage_records.c.user_id)
            .limit(10)
        ).all()
        occurred = session.execute(select(usage_records.c.occurred_at).where(window)).scalars().all()

    per_day = Counter(quota_day(ensure_utc(value)).isoformat() for value in occurred)

    return {
        "days": days,
        "since": since.isoformat(),
        "totalDownloads": total,
        "topAssets": [
            {"assetId": row.asset_id, "assetName": row.name, "downloads": row.downloads}
            for row in top_assets
        ],
        "topUsers": [{"userId": row.user_id, "downloads": row.downloads} for row in top_users],
        "daily": [{"date": day, "downloads": per_day[day]} for day in sorted(per_day)],
    }
