"""Periodic rollups of refresh history"""

import logging
import statistics
from datetime import datetime, timedelta

from freshwatch.models.analytics import FreshnessAnalyticsRow, PeriodType, RegenerationStats
from freshwatch.models.queue import RefreshType
from freshwatch.services.db_manager import Database
from freshwatch.utils.timestamps import ensure_utc, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

PERIOD_LENGTHS = {
    PeriodType.HOURLY: timedelta(hours=1),
    PeriodType.DAILY: timedelta(days=1),
    PeriodType.WEEKLY: timedelta(weeks=1),
}


def period_bounds(period_type: PeriodType, now: datetime) -> tuple[datetime, datetime]:
    """
    Start and end of the last complete period before now

    Hourly and daily periods align to the hour and midnight UTC; weekly periods
    start on Monday.
    """
    period_type = PeriodType(period_type)
    if period_type not in PERIOD_LENGTHS:
        raise ValueError(f"No fixed boundaries for {period_type.value} periods")

    now = ensure_utc(now)
    if period_type == PeriodType.HOURLY:
        current = now.replace(minute=0, second=0, microsecond=0)
    else:
        current = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if period_type == PeriodType.WEEKLY:
            current -= timedelta(days=current.weekday())

    return current - PERIOD_LENGTHS[period_type], current


class AnalyticsAggregator:
    """Aggregate refresh history into freshness_analytics rows"""

    def __init__(self, database: Database):
        self.database = database

    def rollup(
        self,
        period_start: datetime,
        period_end: datetime,
        period_type: PeriodType = PeriodType.CUSTOM,
    ) -> FreshnessAnalyticsRow:
        """
        Compute and store statistics for one window

        Attempts are attributed to the window they started in. Running the same
        window again replaces the stored row.

        Args:
            period_start: Inclusive start
            period_end: Exclusive end
            period_type: Period granularity

        Returns:
            FreshnessAnalyticsRow: The stored row
        """
        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        with self.database.transaction() as conn:
            history = conn.execute(
                """
                SELECT success, changes_found, processing_duration_ms,
                       network_requests_count, bytes_processed
                FROM refresh_history
                WHERE started_at >= ? AND started_at < ?
                """,
                (to_db_time(period_start), to_db_time(period_end)),
            ).fetchall()

            states = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(status = 'fresh') AS fresh,
                    SUM(status = 'stale') AS stale,
                    SUM(status = 'expired') AS expired,
                    SUM(status = 'failed') AS failed,
                    AVG(staleness_score) AS avg_score
                FROM freshness_records
                """
            ).fetchone()

            durations = [row["processing_duration_ms"] for row in history]
            row = FreshnessAnalyticsRow(
                period_start=period_start,
                period_end=period_end,
                period_type=PeriodType(period_type),
                total_refreshes_attempted=len(history),
                successful_refreshes=sum(1 for r in history if r["success"]),
                failed_refreshes=sum(1 for r in history if not r["success"]),
                changes_detected_count=sum(1 for r in history if r["changes_found"]),
                avg_processing_duration_ms=round(statistics.fmean(durations), 2) if durations else None,
                median_processing_duration_ms=statistics.median(durations) if durations else None,
                total_processing_time_ms=sum(durations),
                total_network_requests=sum(r["network_requests_count"] for r in history),
                total_bytes_processed=sum(r["bytes_processed"] for r in history),
                total_items_tracked=states["total"] or 0,
                fresh_items_count=states["fresh"] or 0,
                stale_items_count=states["stale"] or 0,
                expired_items_count=states["expired"] or 0,
                failed_items_count=states["failed"] or 0,
                avg_staleness_score=(
                    round(states["avg_score"], 2) if states["avg_score"] is not None else None
                ),
                computed_at=utcnow(),
            )

            conn.execute(
                """
                INSERT INTO freshness_analytics (
                    period_start, period_end, period_type, total_refreshes_attempted,
                    successful_refreshes, failed_refreshes, changes_detected_count,
                    avg_processing_duration_ms, median_processing_duration_ms,
                    total_processing_time_ms, total_network_requests, total_bytes_processed,
                    total_items_tracked, fresh_items_count, stale_items_count,
                    expired_items_count, failed_items_count, avg_staleness_score, computed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(period_start, period_end, period_type) DO UPDATE SET
                    total_refreshes_attempted = excluded.total_refreshes_attempted,
                    successful_refreshes = excluded.successful_refreshes,
                    failed_refreshes = excluded.failed_refreshes,
                    changes_detected_count = excluded.changes_detected_count,
                    avg_processing_duration_ms = excluded.avg_processing_duration_ms,
                    median_processing_duration_ms = excluded.median_processing_duration_ms,
                    total_processing_time_ms = excluded.total_processing_time_ms,
                    total_network_requests = excluded.total_network_requests,
                    total_bytes_processed = excluded.total_bytes_processed,
                    total_items_tracked = excluded.total_items_tracked,
                    fresh_items_count = excluded.fresh_items_count,
                    stale_items_count = excluded.stale_items_count,
                    expired_items_count = excluded.expired_items_count,
                    failed_items_count = excluded.failed_items_count,
                    avg_staleness_score = excluded.avg_staleness_score,
                    computed_at = excluded.computed_at
                """,
                (
                    to_db_time(row.period_start),
                    to_db_time(row.period_end),
                    row.period_type.value,
                    row.total_refreshes_attempted,
                    row.successful_refreshes,
                    row.failed_refreshes,
                    row.changes_detected_count,
                    row.avg_processing_duration_ms,
                    row.median_processing_duration_ms,
                    row.total_processing_time_ms,
                    row.total_network_requests,
                    row.total_bytes_processed,
                    row.total_items_tracked,
                    row.fresh_items_count,
                    row.stale_items_count,
                    row.expired_items_count,
                    row.failed_items_count,
                    row.avg_staleness_score,
                    to_db_time(row.computed_at),
                ),
            )

        logger.info(
            f"Analytics rollup {row.period_type.value} {period_start.isoformat()}: "
            f"{row.total_refreshes_attempted} attempt(s), {row.successful_refreshes} succeeded"
        )
        return row

    def rollup_previous_period(
        self, period_type: PeriodType, now: datetime | None = None
    ) -> FreshnessAnalyticsRow:
        """Roll up the last complete hourly, daily or weekly period"""
        start, end = period_bounds(period_type, now or utcnow())
        return self.rollup(start, end, period_type)

    def get_rows(
        self, period_type: PeriodType | None = None, limit: int = 24
    ) -> list[FreshnessAnalyticsRow]:
        """Stored rows, most recent period first"""
        with self.database.connection() as conn:
            if period_type is None:
                rows = conn.execute(
                    "SELECT * FROM freshness_analytics ORDER BY period_start DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM freshness_analytics WHERE period_type = ? "
                    "ORDER BY period_start DESC LIMIT ?",
                    (PeriodType(period_type).value, limit),
                ).fetchall()

        results = []
        for row in rows:
            data = dict(row)
            for key in ("period_start", "period_end", "computed_at"):
                data[key] = from_db_time(data[key])
            results.append(FreshnessAnalyticsRow(**data))
        return results

    def regeneration_stats(
        self,
        start: datetime,
        end: datetime,
        refresh_type: RefreshType | None = None,
    ) -> RegenerationStats:
        """
        Success and change-detection rates of attempts started in a window

        Args:
            start: Inclusive start
            end: Exclusive end
            refresh_type: Only count attempts of this type
        """
        sql = """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(success), 0) AS successful,
                COALESCE(SUM(changes_found), 0) AS changes,
                AVG(processing_duration_ms) AS avg_ms
            FROM refresh_history
            WHERE started_at >= ? AND started_at < ?
        """
        params: list[str] = [to_db_time(ensure_utc(start)), to_db_time(ensure_utc(end))]
        if refresh_type is not None:
            sql += " AND refresh_type = ?"
            params.append(RefreshType(refresh_type).value)

        with self.database.connection() as conn:
            row = conn.execute(sql, params).fetchone()

        total = row["total"]
        successful = row["successful"]
        return RegenerationStats(
            total=total,
            successful=successful,
            failed=total - successful,
            changes_detected=row["changes"],
            average_processing_time_ms=round(row["avg_ms"] or 0),
            success_rate=round(successful / total * 100) if total else 0,
            change_detection_rate=round(row["changes"] / successful * 100) if successful else 0,
        )
