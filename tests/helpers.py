"""Test data builders"""

from datetime import UTC, datetime

from freshwatch.models.content import ContentSnapshot
from freshwatch.models.queue import ErrorCode, RefreshOutcome

T0 = datetime(2025, 1, 6, 12, 0, tzinfo=UTC)


def make_snapshot(
    url: str = "https://example.com/product",
    content: str = "A tool for tracking content freshness.",
    title: str = "Example Product",
    description: str = "Tracks freshness",
    images: list[str] | None = None,
    **metadata,
) -> ContentSnapshot:
    """Build a snapshot with sensible defaults"""
    return ContentSnapshot(
        url=url,
        content=content,
        metadata={"title": title, "description": description, **metadata},
        images=images or [],
        status_code=200,
    )


def success_outcome(snapshot=None, change=None, at: datetime = T0, **fields) -> RefreshOutcome:
    """Outcome of an attempt that fetched and compared successfully"""
    return RefreshOutcome(
        success=True,
        snapshot=snapshot,
        change=change,
        started_at=at,
        completed_at=at,
        **fields,
    )


def failure_outcome(
    code: ErrorCode = ErrorCode.NETWORK_ERROR,
    retryable: bool = True,
    at: datetime = T0,
    message: str = "connection reset",
) -> RefreshOutcome:
    """Outcome of a failed attempt"""
    return RefreshOutcome(
        success=False,
        retryable=retryable,
        error_code=code,
        error_message=message,
        started_at=at,
        completed_at=at,
    )
