"""Data models for the freshness service"""

from freshwatch.models.analytics import (
    Alert,
    AlertKind,
    FreshnessAnalyticsRow,
    PeriodType,
    RegenerationStats,
)
from freshwatch.models.content import (
    ChangeResult,
    ContentSnapshot,
    ContentVersion,
    DetectionMethod,
    FetchedPage,
    RewrittenContent,
    SnapshotHashes,
)
from freshwatch.models.freshness import FreshnessRecord, FreshnessStatus, RefreshPriority
from freshwatch.models.freshness_settings import ConfigEntry, FreshnessSettings
from freshwatch.models.queue import (
    CycleResult,
    ErrorCode,
    QueueStatus,
    RefreshHistoryEntry,
    RefreshOutcome,
    RefreshQueueEntry,
    RefreshType,
)

__all__ = [
    "Alert",
    "AlertKind",
    "ChangeResult",
    "ConfigEntry",
    "ContentSnapshot",
    "ContentVersion",
    "CycleResult",
    "DetectionMethod",
    "ErrorCode",
    "FetchedPage",
    "FreshnessAnalyticsRow",
    "FreshnessRecord",
    "FreshnessSettings",
    "FreshnessStatus",
    "PeriodType",
    "QueueStatus",
    "RefreshHistoryEntry",
    "RefreshOutcome",
    "RefreshPriority",
    "RefreshQueueEntry",
    "RefreshType",
    "RegenerationStats",
    "RewrittenContent",
    "SnapshotHashes",
]
