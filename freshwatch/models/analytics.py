"""Analytics and alert models"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PeriodType(str, Enum):
    """Granularity of an analytics rollup"""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class FreshnessAnalyticsRow(BaseModel):
    """Aggregate refresh statistics for one period"""

    period_start: datetime = Field(description="Inclusive start of the window")
    period_end: datetime = Field(description="Exclusive end of the window")
    period_type: PeriodType

    total_refreshes_attempted: int = Field(default=0, ge=0)
    successful_refreshes: int = Field(default=0, ge=0)
    failed_refreshes: int = Field(default=0, ge=0)
    changes_detected_count: int = Field(default=0, ge=0)

    avg_processing_duration_ms: float | None = None
    median_processing_duration_ms: float | None = None
    total_processing_time_ms: int = Field(default=0, ge=0)
    total_network_requests: int = Field(default=0, ge=0)
    total_bytes_processed: int = Field(default=0, ge=0)

    # Record states at the time of the rollup
    total_items_tracked: int = Field(default=0, ge=0)
    fresh_items_count: int = Field(default=0, ge=0)
    stale_items_count: int = Field(default=0, ge=0)
    expired_items_count: int = Field(default=0, ge=0)
    failed_items_count: int = Field(default=0, ge=0)
    avg_staleness_score: float | None = None

    computed_at: datetime


class RegenerationStats(BaseModel):
    """Success and change-detection rates over a window"""

    total: int = 0
    successful: int = 0
    failed: int = 0
    changes_detected: int = 0
    average_processing_time_ms: int = 0
    success_rate: int = Field(default=0, ge=0, le=100, description="Percentage")
    change_detection_rate: int = Field(default=0, ge=0, le=100, description="Percentage")


class AlertKind(str, Enum):
    """Operational conditions worth a human's attention"""

    RETRIES_EXHAUSTED = "retries_exhausted"
    REPEATED_RECLAIM = "repeated_reclaim"
    VALIDATION_FAILED = "validation_failed"


class Alert(BaseModel):
    """A recorded operational alert"""

    id: str
    kind: AlertKind
    item_id: str
    queue_id: str | None = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
