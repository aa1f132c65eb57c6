"""Download gate: grants write exactly one record, denials write nothing."""
from datetime import timedelta

import pytest

from assetgate.core.errors import AssetUnavailableError, NotFoundError
from assetgate.features.catalog.service import require_asset
from assetgate.features.downloads.service import attempt_download, download_status
from assetgate.features.entitlements.service import DenialReason
from assetgate.features.usage.service import count_since, day_start, next_day_start
from assetgate.tests.factories import FIXED_NOW


def test_five_per_day_scenario(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")

    remaining = []
    for minute in range(5):
        result = attempt_download(user, "asset_1", now=FIXED_NOW + timedelta(minutes=minute))
        assert result.granted
        remaining.append(result.remaining)

    sixth = attempt_download(user, "asset_1", now=FIXED_NOW + timedelta(minutes=10))

    assert remaining == [4, 3, 2, 1, 0]
    assert sixth.granted is False
    assert sixth.reason == DenialReason.LIMIT_REACHED
    assert sixth.resets_at == next_day_start(FIXED_NOW)
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 5

    after_reset = attempt_download(user, "asset_1", now=next_day_start(FIXED_NOW) + timedelta(seconds=1))
    assert after_reset.granted
    assert after_reset.remaining == 4


def test_denied_attempt_writes_nothing(user, plans, assets):
    result = attempt_download(user, "asset_1", now=FIXED_NOW)

    assert result.granted is False
    assert result.reason == DenialReason.NO_SUBSCRIPTION
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 0
    assert require_asset("asset_1").download_count == 0


def test_grant_returns_url_and_bumps_download_count(user, plans, assets, grant_manual, test_settings):
    test_settings.ASSET_BASE_URL = "https://files.example.com/"
    grant_manual(user.user_id, "premium")

    local = attempt_download(user, "asset_1", now=FIXED_NOW)
    remote = attempt_download(user, "asset_2", now=FIXED_NOW)

    assert local.download_url == "https://files.example.com/packs/mountain.zip"
    assert remote.download_url == "https://cdn.example.com/ocean.zip"
    assert require_asset("asset_1").download_count == 1


def test_admin_downloads_are_recorded_without_limit(admin, assets):
    for _ in range(12):
        result = attempt_download(admin, "asset_1", now=FIXED_NOW)
        assert result.granted
        assert result.remaining is None

    assert count_since(admin.user_id, day_start(FIXED_NOW)) == 12


def test_unknown_asset_raises_not_found(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")
    with pytest.raises(NotFoundError):
        attempt_download(user, "missing_asset", now=FIXED_NOW)


def test_inactive_asset_is_unavailable(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")
    with pytest.raises(AssetUnavailableError) as exc_info:
        attempt_download(user, "asset_retired", now=FIXED_NOW)

    assert exc_info.value.reason == "ASSET_UNAVAILABLE"
    assert exc_info.value.status_code == 403
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 0


def test_status_reports_quota_without_writing(user, plans, assets, grant_manual):
    sub = grant_manual(user.user_id, "basic")
    attempt_download(user, "asset_1", now=FIXED_NOW)

    status = download_status(user, FIXED_NOW)

    assert status == {
        "isAdmin": False,
        "hasSubscription": True,
        "canDownload": True,
        "remainingDownloads": 4,
        "dailyDownloads": 1,
        "downloadLimit": 5,
        "subscription": {"planName": "Basic", "expiresAt": sub.end_date.isoformat(), "status": "manual"},
        "resetsAt": next_day_start(FIXED_NOW).isoformat(),
    }
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 1


def test_asset_without_thumbnail_downloads_from_absolute_url(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")

    result = attempt_download(user, "asset_2", now=FIXED_NOW)

    assert result.granted
    assert result.asset.thumbnail is None
    assert result.download_url == "https://cdn.example.com/ocean.zip"
    assert require_asset("asset_2").download_count == 1
