"""Content snapshot, change detection and version models"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DetectionMethod(str, Enum):
    """How a change (or the absence of one) was established"""

    CONTENT_HASH = "content_hash"
    METADATA_DIFF = "metadata_diff"
    IMAGE_CHANGE = "image_change"
    FULL_SCAN = "full_scan"


class ContentSnapshot(BaseModel):
    """Point-in-time view of an item's remote content"""

    url: str = Field(min_length=1, description="URL the content was fetched from")
    content: str = Field(default="", description="Main text content of the page")
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Extracted metadata (title, description, tags, ...)"
    )
    images: list[str] = Field(default_factory=list, description="Image URLs found on the page")
    status_code: int | None = Field(
        default=None, ge=100, le=599, description="HTTP status of the fetch"
    )
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), description="When the content was fetched"
    )


class SnapshotHashes(BaseModel):
    """The three independent digests of a snapshot"""

    content_hash: str
    metadata_hash: str
    images_hash: str | None = None


class ChangeResult(BaseModel):
    """Outcome of comparing two snapshots"""

    has_changes: bool = Field(description="Whether any of the three hashes differ")
    content_changed: bool = Field(default=False, description="Content hash differs")
    metadata_changed: bool = Field(default=False, description="Metadata hash differs")
    images_changed: bool = Field(default=False, description="Images hash differs")
    changed_fields: dict[str, list[str]] = Field(
        default_factory=dict, description="Changed field names per category"
    )
    change_score: float = Field(
        default=0.0, ge=0.0, le=100.0, description="Weighted magnitude of the change"
    )
    detection_method: DetectionMethod = Field(description="Method that established the result")
    summary: str = Field(default="No changes detected", description="Human-readable summary")
    hashes: SnapshotHashes = Field(description="Hashes of the new snapshot")


class RewrittenContent(BaseModel):
    """Output of the content rewriter"""

    title: str = Field(description="Rewritten title")
    description: str = Field(default="", description="Rewritten description")
    tags: list[str] = Field(default_factory=list, description="Rewritten tags")


class FetchedPage(BaseModel):
    """Result returned by a metadata fetcher"""

    url: str = Field(description="URL that was fetched")
    raw_content: str = Field(default="", description="Main text content of the response")
    status_code: int = Field(ge=100, le=599, description="HTTP status code")
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), description="When the fetch completed"
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Extracted metadata")
    images: list[str] = Field(default_factory=list, description="Extracted image URLs")
    bytes_processed: int = Field(default=0, ge=0, description="Size of the response body")
    network_requests: int = Field(default=1, ge=0, description="HTTP requests issued")

    def to_snapshot(self) -> ContentSnapshot:
        """Convert into the snapshot compared by the change detector"""
        return ContentSnapshot(
            url=self.url,
            content=self.raw_content,
            metadata=self.metadata,
            images=self.images,
            status_code=self.status_code,
            fetched_at=self.fetched_at,
        )


class ContentVersion(BaseModel):
    """Immutable snapshot of one version of an item"""

    item_id: str = Field(description="Owning item")
    version_number: int = Field(ge=1, description="Version number, gapless per item")
    content_hash: str
    metadata_hash: str
    images_hash: str | None = None

    changes_detected: dict[str, list[str]] = Field(
        default_factory=dict, description="Changed field names per category"
    )
    change_summary: str | None = Field(default=None, description="Human-readable summary")
    change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    detection_method: DetectionMethod

    original_meta_snapshot: dict[str, Any] = Field(default_factory=dict)
    rewritten_meta_snapshot: dict[str, Any] | None = None
    images_snapshot: list[str] = Field(default_factory=list)

    processing_duration_ms: int | None = Field(default=None, ge=0)
    created_at: datetime
