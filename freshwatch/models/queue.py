"""Refresh queue, outcome and history models"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from freshwatch.models.content import ChangeResult, ContentSnapshot, RewrittenContent
from freshwatch.models.freshness import RefreshPriority


class QueueStatus(str, Enum):
    """State of a refresh queue entry"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefreshType(str, Enum):
    """What caused a refresh"""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    BATCH = "batch"


class ErrorCode(str, Enum):
    """Classification of a failed refresh attempt"""

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    LEASE_EXPIRED = "LEASE_EXPIRED"
    UNEXPECTED = "UNEXPECTED"


class RefreshQueueEntry(BaseModel):
    """A scheduled revalidation of one item"""

    id: str = Field(description="Entry identifier (UUID)")
    item_id: str = Field(description="Item to revalidate")
    priority: RefreshPriority = Field(default=RefreshPriority.NORMAL)
    refresh_type: RefreshType = Field(default=RefreshType.SCHEDULED)
    trigger_reason: str | None = Field(default=None, description="Why the entry was created")
    scheduled_at: datetime = Field(description="Earliest time the entry may be claimed")
    started_at: datetime | None = Field(default=None, description="When it was claimed")
    completed_at: datetime | None = Field(default=None, description="When it reached a terminal state")
    status: QueueStatus = Field(default=QueueStatus.PENDING)
    worker_id: str | None = Field(default=None, description="Worker holding the claim")
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=1)
    reclaim_count: int = Field(default=0, ge=0, description="Times the lease expired")
    error_message: str | None = None
    error_code: str | None = None
    batch_id: str | None = Field(default=None, description="Advisory grouping for reporting")
    created_at: datetime
    updated_at: datetime


class RefreshOutcome(BaseModel):
    """What a worker reports back for one executed attempt"""

    success: bool = Field(description="Whether the fetch and comparison succeeded")
    snapshot: ContentSnapshot | None = Field(default=None, description="Freshly fetched snapshot")
    change: ChangeResult | None = Field(default=None, description="Change detection result")
    rewrite_invoked: bool = Field(default=False, description="Whether the rewriter was called")
    rewritten: RewrittenContent | None = Field(default=None, description="Rewriter output")
    rewrite_error: str | None = Field(default=None, description="Rewriter failure, if any")
    retryable: bool = Field(default=True, description="Whether a failure may be retried")
    error_message: str | None = None
    error_code: ErrorCode | None = None
    started_at: datetime
    completed_at: datetime
    network_requests_count: int = Field(default=0, ge=0)
    bytes_processed: int = Field(default=0, ge=0)

    @property
    def processing_duration_ms(self) -> int:
        """Wall-clock duration of the attempt in milliseconds"""
        return max(0, int((self.completed_at - self.started_at).total_seconds() * 1000))


class RefreshHistoryEntry(BaseModel):
    """Immutable log of one executed refresh attempt"""

    id: str
    item_id: str
    queue_id: str | None = None
    refresh_type: RefreshType
    trigger_reason: str | None = None
    success: bool
    changes_found: bool = False
    content_updated: bool = False
    rewrite_invoked: bool = False
    processing_duration_ms: int = Field(default=0, ge=0)
    network_requests_count: int = Field(default=0, ge=0)
    bytes_processed: int = Field(default=0, ge=0)
    changes_detected: dict[str, list[str]] = Field(default_factory=dict)
    old_content_hash: str | None = None
    new_content_hash: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    started_at: datetime
    completed_at: datetime


class BatchRefreshResult(BaseModel):
    """Result of queueing a batch of refreshes"""

    batch_id: str = Field(description="Identifier shared by the queued entries")
    queued: int = Field(default=0, ge=0, description="Entries created")
    skipped: int = Field(default=0, ge=0, description="Items that already had an active entry")
    not_tracked: list[str] = Field(default_factory=list, description="Unknown item ids")


class CycleResult(BaseModel):
    """Result of one tick-and-drain refresh cycle"""

    success: bool = Field(description="Whether the cycle ran to completion")
    enqueued: int = Field(default=0, ge=0, description="Entries queued by the tick")
    processed: int = Field(default=0, ge=0, description="Entries completed by workers")
    reclaimed: int = Field(default=0, ge=0, description="Abandoned entries returned to pending")
    start_time: datetime = Field(description="When the cycle started")
    end_time: datetime = Field(description="When the cycle ended")
    duration_seconds: float = Field(description="Duration in seconds")
    error: str | None = Field(default=None, description="Error message if failed")
