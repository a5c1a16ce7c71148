"""Content change detection between fetch cycles"""

import hashlib
import json
import re
import unicodedata
from typing import Any

from freshwatch.models.content import (
    ChangeResult,
    ContentSnapshot,
    ContentVersion,
    DetectionMethod,
    SnapshotHashes,
)

# Relative importance of a changed field; the sum is capped at 1.0
FIELD_WEIGHTS: dict[str, float] = {
    "title": 0.4,
    "description": 0.3,
    "url": 0.3,
    "content": 0.25,
    "image": 0.2,
    "images": 0.2,
    "tags": 0.15,
    "author": 0.1,
    "published_date": 0.05,
}
DEFAULT_FIELD_WEIGHT = 0.05

# Volatile fields that never count as a content change
INSIGNIFICANT_FIELDS = frozenset(
    {
        "last_modified",
        "last_accessed",
        "views",
        "likes",
        "shares",
        "timestamp",
        "fetched_at",
    }
)

_WHITESPACE = re.compile(r"\s+")


def _normalize(value: Any) -> Any:
    """Canonicalize a value so cosmetic differences hash identically"""
    if isinstance(value, str):
        return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", value)).strip()
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_normalize(v) for v in value]
    return value


def _significant_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in metadata.items() if k not in INSIGNIFICANT_FIELDS}


class ChangeDetector:
    """Compare content snapshots and classify the kind and size of a change"""

    def hash(self, content: Any) -> str:
        """
        Deterministic digest of normalized content

        Used for equality testing only, not for security.

        Args:
            content: Any JSON-serializable value

        Returns:
            Hex SHA-256 digest
        """
        canonical = json.dumps(
            _normalize(content), sort_keys=True, separators=(",", ":"), default=str
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def snapshot_hashes(self, snapshot: ContentSnapshot) -> SnapshotHashes:
        """Compute the content, metadata and images digests of a snapshot"""
        return SnapshotHashes(
            content_hash=self.hash({"url": snapshot.url, "content": snapshot.content}),
            metadata_hash=self.hash(_significant_metadata(snapshot.metadata)),
            images_hash=self.hash(sorted(snapshot.images)) if snapshot.images else None,
        )

    def detect_changes(
        self, old: ContentSnapshot | None, new: ContentSnapshot
    ) -> ChangeResult:
        """
        Compare two snapshots

        Args:
            old: Previous snapshot, or None for the very first check
            new: Freshly fetched snapshot

        Returns:
            ChangeResult describing which categories changed and by how much
        """
        new_hashes = self.snapshot_hashes(new)

        if old is None:
            fields = sorted(_significant_metadata(new.metadata))
            changed_fields = {"metadata": fields}
            if new.images:
                changed_fields["images"] = ["images"]
            return ChangeResult(
                has_changes=True,
                content_changed=True,
                metadata_changed=True,
                images_changed=bool(new.images),
                changed_fields=changed_fields,
                change_score=100.0,
                detection_method=DetectionMethod.FULL_SCAN,
                summary="Initial scan",
                hashes=new_hashes,
            )

        return self._compare(self.snapshot_hashes(old), old.metadata, old.url, new, new_hashes)

    def detect_from_version(self, previous: ContentVersion, new: ContentSnapshot) -> ChangeResult:
        """
        Compare a fresh snapshot against the stored version it may supersede

        Stored versions keep hashes and metadata but not the page text, so the
        content comparison relies on the stored digest alone.
        """
        old_hashes = SnapshotHashes(
            content_hash=previous.content_hash,
            metadata_hash=previous.metadata_hash,
            images_hash=previous.images_hash,
        )
        return self._compare(
            old_hashes, previous.original_meta_snapshot, new.url, new, self.snapshot_hashes(new)
        )

    def _compare(
        self,
        old_hashes: SnapshotHashes,
        old_metadata: dict[str, Any],
        old_url: str,
        new: ContentSnapshot,
        new_hashes: SnapshotHashes,
    ) -> ChangeResult:
        content_changed = old_hashes.content_hash != new_hashes.content_hash
        metadata_changed = old_hashes.metadata_hash != new_hashes.metadata_hash
        images_changed = old_hashes.images_hash != new_hashes.images_hash

        changed_fields: dict[str, list[str]] = {}
        if metadata_changed:
            changed_fields["metadata"] = self._diff_fields(old_metadata, new.metadata)
        if images_changed:
            changed_fields["images"] = ["images"]
        if content_changed:
            changed_fields["content"] = ["url"] if old_url != new.url else ["content"]

        if metadata_changed:
            method = DetectionMethod.METADATA_DIFF
        elif images_changed:
            method = DetectionMethod.IMAGE_CHANGE
        else:
            method = DetectionMethod.CONTENT_HASH

        all_fields = [field for fields in changed_fields.values() for field in fields]

        return ChangeResult(
            has_changes=content_changed or metadata_changed or images_changed,
            content_changed=content_changed,
            metadata_changed=metadata_changed,
            images_changed=images_changed,
            changed_fields=changed_fields,
            change_score=self.change_score(all_fields),
            detection_method=method,
            summary=self._summarize(changed_fields),
            hashes=new_hashes,
        )

    def change_score(self, changed_fields: list[str]) -> float:
        """Weighted magnitude (0-100) of a set of changed field names"""
        if not changed_fields:
            return 0.0
        total = sum(FIELD_WEIGHTS.get(field, DEFAULT_FIELD_WEIGHT) for field in changed_fields)
        return round(min(1.0, total) * 100.0, 2)

    def requires_rewrite(self, result: ChangeResult, sensitivity: float) -> bool:
        """
        Whether a change is large enough to regenerate rewritten content

        Args:
            result: Change detection result
            sensitivity: change_detection_sensitivity setting (0-1)
        """
        return result.has_changes and result.change_score > sensitivity * 100.0

    def _diff_fields(self, old: dict[str, Any], new: dict[str, Any]) -> list[str]:
        old_sig = _normalize(_significant_metadata(old))
        new_sig = _normalize(_significant_metadata(new))
        return sorted(
            key for key in set(old_sig) | set(new_sig) if old_sig.get(key) != new_sig.get(key)
        )

    def _summarize(self, changed_fields: dict[str, list[str]]) -> str:
        if not changed_fields:
            return "No changes detected"
        parts = [
            f"{category.capitalize()}: {', '.join(fields)}"
            for category, fields in changed_fields.items()
        ]
        return "; ".join(parts)
