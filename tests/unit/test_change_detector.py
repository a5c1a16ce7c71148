"""Unit tests for change detection"""

import pytest

from freshwatch.models.content import ContentVersion, DetectionMethod
from freshwatch.services.change_detector import ChangeDetector
from tests.helpers import T0, make_snapshot


class TestHashing:
    """Test deterministic content hashing"""

    @pytest.fixture
    def detector(self):
        return ChangeDetector()

    def test_identical_content_hashes_identically(self, detector):
        assert detector.hash({"a": 1, "b": "x"}) == detector.hash({"b": "x", "a": 1})

    def test_whitespace_and_unicode_normalization(self, detector):
        """Cosmetic differences do not change the digest"""
        composed = "Caf\u00e9  launch\n"
        decomposed = "Cafe\u0301 launch"
        assert detector.hash(composed) == detector.hash(decomposed)

    def test_different_content_hashes_differently(self, detector):
        assert detector.hash("alpha") != detector.hash("beta")

    def test_insignificant_metadata_is_ignored(self, detector):
        a = make_snapshot(views=10, fetched_at="2025-01-01")
        b = make_snapshot(views=99, fetched_at="2025-02-01")

        assert detector.snapshot_hashes(a).metadata_hash == detector.snapshot_hashes(b).metadata_hash

    def test_images_hash_absent_without_images(self, detector):
        assert detector.snapshot_hashes(make_snapshot()).images_hash is None
        assert detector.snapshot_hashes(make_snapshot(images=["https://x/a.png"])).images_hash

    def test_image_order_does_not_matter(self, detector):
        a = make_snapshot(images=["https://x/a.png", "https://x/b.png"])
        b = make_snapshot(images=["https://x/b.png", "https://x/a.png"])
        assert detector.snapshot_hashes(a).images_hash == detector.snapshot_hashes(b).images_hash


class TestDetectChanges:
    """Test snapshot comparison"""

    @pytest.fixture
    def detector(self):
        return ChangeDetector()

    def test_first_scan(self, detector):
        result = detector.detect_changes(None, make_snapshot())

        assert result.has_changes is True
        assert result.detection_method == DetectionMethod.FULL_SCAN
        assert result.change_score == 100.0

    def test_no_change(self, detector):
        snapshot = make_snapshot()
        result = detector.detect_changes(snapshot, make_snapshot())

        assert result.has_changes is False
        assert result.change_score == 0.0
        assert result.detection_method == DetectionMethod.CONTENT_HASH
        assert result.changed_fields == {}
        assert result.summary == "No changes detected"

    def test_title_change_scores_forty(self, detector):
        result = detector.detect_changes(make_snapshot(), make_snapshot(title="Renamed"))

        assert result.has_changes is True
        assert result.metadata_changed is True
        assert result.content_changed is False
        assert result.changed_fields == {"metadata": ["title"]}
        assert result.change_score == 40.0
        assert result.detection_method == DetectionMethod.METADATA_DIFF

    def test_cosmetic_whitespace_change_is_not_a_change(self, detector):
        result = detector.detect_changes(
            make_snapshot(title="Example Product"), make_snapshot(title="  Example   Product ")
        )
        assert result.has_changes is False

    def test_image_change(self, detector):
        old = make_snapshot(images=["https://x/a.png"])
        new = make_snapshot(images=["https://x/b.png"])
        result = detector.detect_changes(old, new)

        assert result.images_changed is True
        assert result.detection_method == DetectionMethod.IMAGE_CHANGE
        assert result.change_score == 20.0

    def test_content_only_change(self, detector):
        result = detector.detect_changes(make_snapshot(), make_snapshot(content="Rewritten body"))

        assert result.content_changed is True
        assert result.detection_method == DetectionMethod.CONTENT_HASH
        assert result.changed_fields == {"content": ["content"]}
        assert result.change_score == 25.0

    def test_score_is_capped(self, detector):
        old = make_snapshot()
        new = make_snapshot(
            title="New",
            description="New description",
            content="New body",
            images=["https://x/new.png"],
            tags=["a"],
        )
        result = detector.detect_changes(old, new)
        assert result.change_score == 100.0

    def test_unknown_field_uses_default_weight(self, detector):
        result = detector.detect_changes(make_snapshot(), make_snapshot(pricing="free"))
        assert result.change_score == 5.0

    def test_compare_against_stored_version(self, detector):
        """Stored versions are compared by digest and metadata"""
        old = make_snapshot()
        hashes = detector.snapshot_hashes(old)
        version = ContentVersion(
            item_id="item-1",
            version_number=1,
            content_hash=hashes.content_hash,
            metadata_hash=hashes.metadata_hash,
            images_hash=hashes.images_hash,
            detection_method=DetectionMethod.FULL_SCAN,
            original_meta_snapshot=old.metadata,
            created_at=T0,
        )

        unchanged = detector.detect_from_version(version, make_snapshot())
        changed = detector.detect_from_version(version, make_snapshot(description="Updated"))

        assert unchanged.has_changes is False
        assert changed.has_changes is True
        assert changed.changed_fields == {"metadata": ["description"]}


class TestRequiresRewrite:
    """Test rewrite threshold"""

    def test_threshold_is_sensitivity_times_hundred(self):
        detector = ChangeDetector()
        result = detector.detect_changes(make_snapshot(), make_snapshot(author="Someone"))

        assert result.change_score == 10.0
        assert detector.requires_rewrite(result, 0.05) is True
        assert detector.requires_rewrite(result, 0.1) is False

    def test_no_change_never_requires_rewrite(self):
        detector = ChangeDetector()
        result = detector.detect_changes(make_snapshot(), make_snapshot())
        assert detector.requires_rewrite(result, 0.0) is False
