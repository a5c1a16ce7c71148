"""Unit tests for staleness scoring and status derivation"""

from datetime import timedelta

import pytest

from freshwatch.models.freshness import FreshnessRecord, FreshnessStatus, RefreshPriority
from freshwatch.services.config_store import ConfigStore
from freshwatch.services.db_manager import Database
from freshwatch.services.freshness_tracker import FreshnessTracker
from tests.helpers import T0


def make_record(priority=RefreshPriority.NORMAL, checked_hours_ago=0.0) -> FreshnessRecord:
    checked = T0 - timedelta(hours=checked_hours_ago)
    return FreshnessRecord(
        item_id="item-1",
        url="https://example.com",
        last_checked_at=checked,
        last_updated_at=checked,
        next_check_at=checked + timedelta(hours=24),
        content_hash="c",
        metadata_hash="m",
        priority=priority,
        created_at=checked,
        updated_at=checked,
    )


class TestStalenessScore:
    """Test compute_staleness_score and status_for"""

    @pytest.fixture
    def tracker(self):
        database = Database(":memory:")
        database.initialize()
        store = ConfigStore(database)
        store.load()
        yield FreshnessTracker(database, store)
        database.close()

    def test_just_checked_is_fresh(self, tracker):
        record = make_record()
        score = tracker.compute_staleness_score(record, T0)

        assert score == 0.0
        assert tracker.status_for(record, score, T0) == FreshnessStatus.FRESH

    def test_score_grows_linearly_to_threshold(self, tracker):
        # 24h of a 48h threshold
        assert tracker.compute_staleness_score(make_record(checked_hours_ago=24), T0) == 50.0
        assert tracker.compute_staleness_score(make_record(checked_hours_ago=12), T0) == 25.0

    @pytest.mark.parametrize(
        "priority,expected",
        [
            (RefreshPriority.LOW, 40.0),
            (RefreshPriority.NORMAL, 50.0),
            (RefreshPriority.HIGH, 60.0),
            (RefreshPriority.CRITICAL, 75.0),
        ],
    )
    def test_priority_multiplier(self, tracker, priority, expected):
        record = make_record(priority=priority, checked_hours_ago=24)
        assert tracker.compute_staleness_score(record, T0) == expected

    def test_score_is_clamped(self, tracker):
        record = make_record(priority=RefreshPriority.CRITICAL, checked_hours_ago=500)
        assert tracker.compute_staleness_score(record, T0) == 100.0

    def test_future_check_time_scores_zero(self, tracker):
        record = make_record(checked_hours_ago=-5)
        assert tracker.compute_staleness_score(record, T0) == 0.0

    def test_score_is_rounded(self, tracker):
        record = make_record(checked_hours_ago=1)
        assert tracker.compute_staleness_score(record, T0) == 2.08

    def test_status_bands(self, tracker):
        record = make_record()
        assert tracker.status_for(record, 49.99, T0) == FreshnessStatus.FRESH
        assert tracker.status_for(record, 50.0, T0) == FreshnessStatus.STALE
        assert tracker.status_for(record, 90.0, T0) == FreshnessStatus.STALE
        assert tracker.status_for(record, 90.01, T0) == FreshnessStatus.EXPIRED

    def test_expiry_threshold_overrides_score(self, tracker):
        """Past the expiry threshold an item is expired whatever its priority"""
        record = make_record(priority=RefreshPriority.LOW, checked_hours_ago=169)
        score = tracker.compute_staleness_score(record, T0)

        assert score == 80.0
        assert tracker.status_for(record, score, T0) == FreshnessStatus.EXPIRED
