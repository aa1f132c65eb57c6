"""Concurrent attempts at the edge of the quota: exactly one succeeds."""
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

from assetgate.features.downloads.service import attempt_download
from assetgate.features.entitlements.service import DenialReason
from assetgate.features.usage.service import count_since, day_start, record
from assetgate.tests.factories import FIXED_NOW

WORKERS = 8


def test_parallel_attempts_with_one_slot_left(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")  # 5 per day
    for _ in range(4):
        record(user.user_id, "asset_1", now=FIXED_NOW)

    barrier = Barrier(WORKERS)

    def attempt(_):
        barrier.wait()
        return attempt_download(user, "asset_1", now=FIXED_NOW)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = list(pool.map(attempt, range(WORKERS)))

    granted = [r for r in results if r.granted]
    denied = [r for r in results if not r.granted]

    assert len(granted) == 1
    assert all(r.reason == DenialReason.LIMIT_REACHED for r in denied)
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 5


def test_parallel_attempts_never_exceed_limit(user, plans, assets, grant_manual):
    grant_manual(user.user_id, "basic")

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = list(pool.map(lambda _: attempt_download(user, "asset_1", now=FIXED_NOW), range(WORKERS * 2)))

    assert sum(1 for r in results if r.granted) == 5
    assert count_since(user.user_id, day_start(FIXED_NOW)) == 5
