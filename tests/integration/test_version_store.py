"""Integration tests for content version history"""

import threading

from freshwatch.models.content import DetectionMethod
from freshwatch.services.change_detector import ChangeDetector
from freshwatch.services.version_store import VersionHistory, VersionStore
from tests.helpers import T0, make_snapshot


def track(tracker, item_id="item-1"):
    return tracker.initialize(item_id, "https://example.com/product", make_snapshot(), now=T0)


def append(versions, item_id, n):
    detector = ChangeDetector()
    snapshot = make_snapshot(content=f"Body revision {n}")
    change = detector.detect_changes(make_snapshot(), snapshot)
    return versions.append_version(item_id, snapshot, change)


class TestVersionStore:
    """Test gapless numbering and history iteration"""

    def test_initial_version(self, tracker, versions):
        track(tracker)

        latest = versions.latest("item-1")
        assert latest.version_number == 1
        assert latest.detection_method == DetectionMethod.FULL_SCAN
        assert latest.original_meta_snapshot["title"] == "Example Product"

    def test_versions_are_gapless(self, tracker, versions):
        track(tracker)
        for n in range(2, 6):
            assert append(versions, "item-1", n).version_number == n

        assert versions.count("item-1") == 5
        assert versions.get_version("item-1", 3).changes_detected == {"content": ["content"]}
        assert versions.get_version("item-1", 9) is None

    def test_appended_version_is_latest_in_history(self, tracker, versions):
        track(tracker)
        appended = append(versions, "item-1", 2)

        (latest,) = versions.history("item-1", limit=1)

        assert latest.version_number == appended.version_number
        assert latest.content_hash == appended.content_hash
        assert latest.metadata_hash == appended.metadata_hash
        assert latest.changes_detected == appended.changes_detected
        assert latest.change_score == appended.change_score

    def test_concurrent_appends_stay_gapless(self, tracker, database):
        track(tracker)
        store = VersionStore(database, max_attempts=50)
        errors = []

        def worker(n):
            try:
                append(store, "item-1", n)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        numbers = sorted(v.version_number for v in store.history("item-1"))
        assert numbers == list(range(1, 10))

    def test_history_is_newest_first_and_limited(self, tracker, versions):
        track(tracker)
        for n in range(2, 8):
            append(versions, "item-1", n)

        assert [v.version_number for v in versions.history("item-1", limit=3)] == [7, 6, 5]

    def test_history_cursor(self, tracker, versions):
        track(tracker)
        for n in range(2, 8):
            append(versions, "item-1", n)

        page = list(versions.history("item-1", limit=2, cursor=5))
        assert [v.version_number for v in page] == [4, 3]

    def test_history_pages_and_restarts(self, tracker, database, versions):
        track(tracker)
        for n in range(2, 8):
            append(versions, "item-1", n)

        history = VersionHistory(database, "item-1", page_size=2)

        first = [v.version_number for v in history]
        second = [v.version_number for v in history]
        assert first == [7, 6, 5, 4, 3, 2, 1]
        assert second == first

    def test_history_of_unknown_item_is_empty(self, versions):
        assert list(versions.history("missing")) == []
        assert versions.latest("missing") is None
