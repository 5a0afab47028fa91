from datetime import datetime, timedelta, timezone

from bookmeta.internal.env_settings import CacheSettings
from bookmeta.internal.models import utcnow
from bookmeta.internal.staleness import Freshness, StalenessPolicy, freshness

NOW = datetime(2026, 3, 1, 12, 0, 0)


class TestFreshness:
    def test_exactly_at_threshold_is_fresh(self):
        threshold = timedelta(days=7)
        assert freshness(NOW - threshold, threshold, now=NOW) is Freshness.fresh

    def test_one_millisecond_past_threshold_is_stale(self):
        threshold = timedelta(days=7)
        last_updated = NOW - threshold - timedelta(milliseconds=1)
        assert freshness(last_updated, threshold, now=NOW) is Freshness.stale

    def test_aware_and_naive_timestamps_compare_as_utc(self):
        aware_now = datetime(2026, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert freshness(NOW - timedelta(hours=1), timedelta(hours=2), now=aware_now) is Freshness.fresh
        assert freshness(NOW - timedelta(hours=3), timedelta(hours=2), now=aware_now) is Freshness.stale

    def test_default_now_accepts_naive_and_aware_timestamps(self):
        aware = utcnow()
        naive = aware.replace(tzinfo=None)
        assert aware.tzinfo is not None
        assert freshness(aware - timedelta(hours=1), timedelta(hours=2)) is Freshness.fresh
        assert freshness(naive - timedelta(hours=3), timedelta(hours=2)) is Freshness.stale

    def test_future_timestamp_is_fresh(self):
        assert freshness(NOW + timedelta(days=1), timedelta(days=7), now=NOW) is Freshness.fresh


class TestStalenessPolicy:
    def test_defaults(self):
        policy = StalenessPolicy()
        assert policy.search_threshold == timedelta(days=7)
        assert policy.record_threshold == timedelta(hours=24)

    def test_thresholds_are_independent(self):
        policy = StalenessPolicy()
        two_days_old = NOW - timedelta(days=2)
        assert policy.is_record_stale(two_days_old, now=NOW)
        assert not policy.is_search_stale(two_days_old, now=NOW)

    def test_from_settings(self):
        policy = StalenessPolicy.from_settings(
            CacheSettings(search_refresh_days=30, record_refresh_hours=1)
        )
        assert policy.search_threshold == timedelta(days=30)
        assert policy.record_threshold == timedelta(hours=1)
        assert policy.is_record_stale(NOW - timedelta(hours=2), now=NOW)
