"""Freshness tracking data models"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FreshnessStatus(str, Enum):
    """Lifecycle status of a tracked item"""

    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"
    PROCESSING = "processing"
    FAILED = "failed"


class RefreshPriority(str, Enum):
    """Scheduling priority of a tracked item or queue entry"""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class FreshnessRecord(BaseModel):
    """Freshness state of one tracked item"""

    item_id: str = Field(min_length=1, description="Identifier of the owning submission")
    url: str = Field(min_length=1, description="Remote URL the metadata was extracted from")

    status: FreshnessStatus = Field(default=FreshnessStatus.FRESH, description="Current status")
    last_checked_at: datetime = Field(description="When the item was last checked successfully")
    last_updated_at: datetime = Field(description="When a content change was last recorded")
    next_check_at: datetime | None = Field(
        default=None, description="When the next check is due (None when auto-refresh is off)"
    )

    content_hash: str = Field(description="Digest of the normalized page content")
    metadata_hash: str = Field(description="Digest of the significant metadata fields")
    images_hash: str | None = Field(default=None, description="Digest of the image set")

    content_version: int = Field(default=1, ge=1, description="Current version number")
    staleness_score: float = Field(
        default=0.0, ge=0.0, le=100.0, description="How overdue the check is (0-100)"
    )
    refresh_interval_hours: int = Field(
        default=24, ge=1, description="Hours between scheduled checks"
    )
    priority: RefreshPriority = Field(
        default=RefreshPriority.NORMAL, description="Scheduling priority"
    )
    auto_refresh_enabled: bool = Field(default=True, description="Whether checks are scheduled")

    check_count: int = Field(default=0, ge=0, description="Successful checks performed")
    update_count: int = Field(default=0, ge=0, description="Checks that found a change")
    failure_count: int = Field(default=0, ge=0, description="Consecutive failed attempts")
    last_change_detected_at: datetime | None = Field(
        default=None, description="When the last content change was detected"
    )

    needs_review: bool = Field(
        default=False, description="Malformed content was fetched; excluded until manual refresh"
    )
    rewrite_pending: bool = Field(
        default=False, description="A rewrite failed and is deferred to the next cycle"
    )
    rewritten_metadata: dict[str, Any] | None = Field(
        default=None, description="Rewritten title/description/tags currently in effect"
    )

    revision: int = Field(default=0, ge=0, description="Optimistic concurrency token")
    created_at: datetime = Field(description="When tracking started")
    updated_at: datetime = Field(description="When the record was last mutated")
