"""Freshness records: staleness scoring, status and scheduling state"""

import logging
import sqlite3
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from freshwatch.models.content import ContentSnapshot
from freshwatch.models.freshness import FreshnessRecord, FreshnessStatus, RefreshPriority
from freshwatch.models.freshness_settings import FreshnessSettings
from freshwatch.models.queue import RefreshOutcome
from freshwatch.services.change_detector import ChangeDetector
from freshwatch.services.config_store import ConfigStore
from freshwatch.services.db_manager import Database, dump_json, load_json
from freshwatch.services.errors import (
    ConcurrencyConflict,
    ItemAlreadyTrackedError,
    ItemNotTrackedError,
    VersionNotFoundError,
)
from freshwatch.services.version_store import VersionStore
from freshwatch.utils.timestamps import ensure_utc, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

# Staleness grows faster for important items
STALENESS_MULTIPLIERS: dict[RefreshPriority, float] = {
    RefreshPriority.CRITICAL: 1.5,
    RefreshPriority.HIGH: 1.2,
    RefreshPriority.NORMAL: 1.0,
    RefreshPriority.LOW: 0.8,
}

STALE_SCORE = 50.0
EXPIRED_SCORE = 90.0

DUE_PAGE_SIZE = 100
UPDATE_MAX_ATTEMPTS = 5

Mutation = Callable[[FreshnessRecord, sqlite3.Connection], dict[str, Any]]


def _to_column(value: Any) -> Any:
    """Convert a model value into its SQLite representation"""
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict | list):
        return dump_json(value)
    return value


def _row_to_record(row: sqlite3.Row) -> FreshnessRecord:
    return FreshnessRecord(
        item_id=row["item_id"],
        url=row["url"],
        status=row["status"],
        last_checked_at=from_db_time(row["last_checked_at"]),
        last_updated_at=from_db_time(row["last_updated_at"]),
        next_check_at=from_db_time(row["next_check_at"]),
        content_hash=row["content_hash"],
        metadata_hash=row["metadata_hash"],
        images_hash=row["images_hash"],
        content_version=row["content_version"],
        staleness_score=row["staleness_score"],
        refresh_interval_hours=row["refresh_interval_hours"],
        priority=row["priority"],
        auto_refresh_enabled=bool(row["auto_refresh_enabled"]),
        check_count=row["check_count"],
        update_count=row["update_count"],
        failure_count=row["failure_count"],
        last_change_detected_at=from_db_time(row["last_change_detected_at"]),
        needs_review=bool(row["needs_review"]),
        rewrite_pending=bool(row["rewrite_pending"]),
        rewritten_metadata=load_json(row["rewritten_metadata"]),
        revision=row["revision"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _priority_order_sql(settings: FreshnessSettings) -> tuple[str, list[float]]:
    """CASE expression mapping a priority column onto its configured weight"""
    weights = [settings.weight_for(p) for p in RefreshPriority]
    cases = " ".join(f"WHEN '{p.value}' THEN ?" for p in RefreshPriority)
    return f"(CASE priority {cases} ELSE 0 END)", weights


class DueRecords:
    """
    Records whose check is due, most urgent first

    Ordered by priority weight, then staleness score, then item id. Each
    iteration is a fresh keyset-paged scan, so the view is restartable and no
    read cursor stays open while the caller enqueues work.
    """

    def __init__(
        self,
        database: Database,
        settings: FreshnessSettings,
        now: datetime,
        page_size: int = DUE_PAGE_SIZE,
    ):
        self.database = database
        self.settings = settings
        self.now = now
        self.page_size = page_size

    def __iter__(self) -> Iterator[FreshnessRecord]:
        weight_sql, weight_params = _priority_order_sql(self.settings)
        base = f"""
            SELECT *, {weight_sql} AS weight FROM freshness_records
            WHERE auto_refresh_enabled = 1
              AND needs_review = 0
              AND next_check_at IS NOT NULL
              AND next_check_at <= ?
        """
        order = " ORDER BY weight DESC, staleness_score DESC, item_id ASC LIMIT ?"
        last: tuple[float, float, str] | None = None

        while True:
            params: list[Any] = [*weight_params, to_db_time(self.now)]
            if last is None:
                sql = base + order
            else:
                sql = (
                    base
                    + """
              AND (
                weight < ?
                OR (weight = ? AND staleness_score < ?)
                OR (weight = ? AND staleness_score = ? AND item_id > ?)
              )
            """
                    + order
                )
                weight, score, item_id = last
                params += [weight, weight, score, weight, score, item_id]
            params.append(self.page_size)

            with self.database.connection() as conn:
                rows = conn.execute(sql, params).fetchall()

            for row in rows:
                yield _row_to_record(row)

            if len(rows) < self.page_size:
                return
            tail = rows[-1]
            last = (tail["weight"], tail["staleness_score"], tail["item_id"])


class FreshnessTracker:
    """Maintain one FreshnessRecord per tracked item"""

    def __init__(
        self,
        database: Database,
        config_store: ConfigStore,
        version_store: VersionStore | None = None,
        detector: ChangeDetector | None = None,
    ):
        """
        Initialize freshness tracker

        Args:
            database: Initialized database
            config_store: Source of the current freshness settings
            version_store: Version history (created on the same database if omitted)
            detector: Change detector used to hash initial snapshots
        """
        self.database = database
        self.config_store = config_store
        self.version_store = version_store or VersionStore(database)
        self.detector = detector or ChangeDetector()

    @property
    def settings(self) -> FreshnessSettings:
        return self.config_store.settings

    def initialize(
        self,
        item_id: str,
        url: str,
        snapshot: ContentSnapshot,
        *,
        priority: RefreshPriority = RefreshPriority.NORMAL,
        refresh_interval_hours: int | None = None,
        auto_refresh_enabled: bool | None = None,
        rewritten_metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> FreshnessRecord:
        """
        Start tracking an item

        Creates the record and version #1 in one transaction.

        Args:
            item_id: Owning item identifier
            url: Remote URL the item's metadata comes from
            snapshot: Initial content snapshot
            priority: Scheduling priority
            refresh_interval_hours: Hours between checks (defaults to settings)
            auto_refresh_enabled: Whether checks are scheduled (defaults to settings)
            rewritten_metadata: Rewritten metadata already produced for the item
            now: Current time

        Returns:
            FreshnessRecord: The new record

        Raises:
            ItemAlreadyTrackedError: If the item already has a record
        """
        now = ensure_utc(now or utcnow())
        settings = self.settings
        interval = refresh_interval_hours or settings.default_refresh_interval_hours
        auto_refresh = (
            settings.enable_auto_refresh if auto_refresh_enabled is None else auto_refresh_enabled
        )
        change = self.detector.detect_changes(None, snapshot)

        record = FreshnessRecord(
            item_id=item_id,
            url=url,
            status=FreshnessStatus.FRESH,
            last_checked_at=now,
            last_updated_at=now,
            next_check_at=now + timedelta(hours=interval) if auto_refresh else None,
            content_hash=change.hashes.content_hash,
            metadata_hash=change.hashes.metadata_hash,
            images_hash=change.hashes.images_hash,
            content_version=1,
            staleness_score=0.0,
            refresh_interval_hours=interval,
            priority=RefreshPriority(priority),
            auto_refresh_enabled=auto_refresh,
            rewritten_metadata=rewritten_metadata,
            created_at=now,
            updated_at=now,
        )
        columns = record.model_dump()

        with self.database.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM freshness_records WHERE item_id = ?", (item_id,)
            ).fetchone()
            if exists:
                raise ItemAlreadyTrackedError(item_id)

            placeholders = ", ".join("?" for _ in columns)
            conn.execute(
                f"INSERT INTO freshness_records ({', '.join(columns)}) VALUES ({placeholders})",
                [_to_column(value) for value in columns.values()],
            )
            self.version_store.append_version(
                item_id,
                snapshot,
                change,
                rewritten_metadata=rewritten_metadata,
                conn=conn,
            )

        logger.info(f"Started tracking {item_id} ({url}), priority={record.priority.value}")
        return record

    def compute_staleness_score(self, record: FreshnessRecord, now: datetime | None = None) -> float:
        """
        How overdue an item's check is, on a 0-100 scale

        Args:
            record: Freshness record
            now: Current time

        Returns:
            Score rounded to two decimals
        """
        hours = self._hours_since_check(record, now)
        threshold = self.settings.staleness_threshold_hours
        base = min(100.0, hours / threshold * 100.0)
        score = base * STALENESS_MULTIPLIERS[RefreshPriority(record.priority)]
        return round(max(0.0, min(100.0, score)), 2)

    def status_for(
        self, record: FreshnessRecord, score: float, now: datetime | None = None
    ) -> FreshnessStatus:
        """Status implied by a staleness score and the expiry threshold"""
        if self._hours_since_check(record, now) > self.settings.expiry_threshold_hours:
            return FreshnessStatus.EXPIRED
        if score > EXPIRED_SCORE:
            return FreshnessStatus.EXPIRED
        if score >= STALE_SCORE:
            return FreshnessStatus.STALE
        return FreshnessStatus.FRESH

    def mark_checked(
        self,
        item_id: str,
        outcome: RefreshOutcome,
        now: datetime | None = None,
        *,
        retry_at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> FreshnessRecord:
        """
        Apply the outcome of a refresh attempt to an item's record

        A successful attempt restarts the refresh interval and, when the content
        changed, appends a version. A failed attempt keeps the last successful
        check time and moves the next check to the retry time.

        Args:
            item_id: Checked item
            outcome: What the worker observed
            now: Current time
            retry_at: When a failed attempt is retried
            conn: Connection of an enclosing transaction

        Returns:
            FreshnessRecord: The updated record
        """
        now = ensure_utc(now or utcnow())

        def apply(record: FreshnessRecord, tx: sqlite3.Connection) -> dict[str, Any]:
            if not outcome.success:
                return self._failure_changes(record, now, retry_at)
            return self._success_changes(record, outcome, now, tx)

        updated = self._update(item_id, apply, now, conn)
        logger.debug(
            f"Recorded {'successful' if outcome.success else 'failed'} check for {item_id}: "
            f"status={updated.status.value} version={updated.content_version}"
        )
        return updated

    def _success_changes(
        self,
        record: FreshnessRecord,
        outcome: RefreshOutcome,
        now: datetime,
        conn: sqlite3.Connection,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "check_count": record.check_count + 1,
            "last_checked_at": now,
            "failure_count": 0,
            "next_check_at": self._next_check(record, now),
        }

        if outcome.rewritten is not None:
            changes["rewritten_metadata"] = outcome.rewritten.model_dump()
            changes["rewrite_pending"] = False
        elif outcome.rewrite_error is not None:
            # Previous rewritten metadata stays in effect until a rewrite succeeds
            changes["rewrite_pending"] = True

        change = outcome.change
        if change is not None and change.has_changes and outcome.snapshot is not None:
            version = self.version_store.append_version(
                record.item_id,
                outcome.snapshot,
                change,
                rewritten_metadata=changes.get("rewritten_metadata", record.rewritten_metadata),
                processing_duration_ms=outcome.processing_duration_ms,
                conn=conn,
            )
            checked = record.model_copy(update={"last_checked_at": now})
            score = self.compute_staleness_score(checked, now)
            changes.update(
                content_version=version.version_number,
                content_hash=change.hashes.content_hash,
                metadata_hash=change.hashes.metadata_hash,
                images_hash=change.hashes.images_hash,
                last_updated_at=now,
                last_change_detected_at=now,
                update_count=record.update_count + 1,
                staleness_score=score,
                status=self.status_for(checked, score, now),
            )
        else:
            changes.update(staleness_score=0.0, status=FreshnessStatus.FRESH)

        return changes

    def _failure_changes(
        self, record: FreshnessRecord, now: datetime, retry_at: datetime | None
    ) -> dict[str, Any]:
        score = self.compute_staleness_score(record, now)
        next_check = None
        if record.auto_refresh_enabled:
            next_check = retry_at or self._next_check(record, now)
        return {
            "failure_count": record.failure_count + 1,
            "next_check_at": next_check,
            "staleness_score": score,
            "status": self.status_for(record, score, now),
        }

    def mark_processing(
        self, item_id: str, now: datetime | None = None, conn: sqlite3.Connection | None = None
    ) -> FreshnessRecord:
        """Flag an item as being refreshed by a worker"""
        now = ensure_utc(now or utcnow())
        return self._update(
            item_id, lambda record, tx: {"status": FreshnessStatus.PROCESSING}, now, conn
        )

    def release_processing(
        self, item_id: str, now: datetime | None = None, conn: sqlite3.Connection | None = None
    ) -> FreshnessRecord:
        """Restore the score-derived status of an item whose worker disappeared"""
        now = ensure_utc(now or utcnow())

        def apply(record: FreshnessRecord, tx: sqlite3.Connection) -> dict[str, Any]:
            score = self.compute_staleness_score(record, now)
            return {"staleness_score": score, "status": self.status_for(record, score, now)}

        return self._update(item_id, apply, now, conn)

    def mark_failed(
        self,
        item_id: str,
        needs_review: bool = False,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> FreshnessRecord:
        """
        Record a terminal refresh failure

        The next regular cycle stays scheduled; an item flagged for review is
        skipped by due_for_check until it is refreshed manually.
        """
        now = ensure_utc(now or utcnow())

        def apply(record: FreshnessRecord, tx: sqlite3.Connection) -> dict[str, Any]:
            return {
                "status": FreshnessStatus.FAILED,
                "failure_count": record.failure_count + 1,
                "needs_review": record.needs_review or needs_review,
                "next_check_at": self._next_check(record, now),
            }

        updated = self._update(item_id, apply, now, conn)
        logger.warning(
            f"Refresh of {item_id} failed terminally"
            + (", flagged for review" if needs_review else "")
        )
        return updated

    def set_auto_refresh(
        self, item_id: str, enabled: bool, now: datetime | None = None
    ) -> FreshnessRecord:
        """Enable or disable scheduled checks for an item"""
        now = ensure_utc(now or utcnow())

        def apply(record: FreshnessRecord, tx: sqlite3.Connection) -> dict[str, Any]:
            toggled = record.model_copy(update={"auto_refresh_enabled": enabled})
            return {"auto_refresh_enabled": enabled, "next_check_at": self._next_check(toggled, now)}

        return self._update(item_id, apply, now)

    def set_priority(
        self, item_id: str, priority: RefreshPriority, now: datetime | None = None
    ) -> FreshnessRecord:
        """Change an item's scheduling priority"""
        now = ensure_utc(now or utcnow())
        return self._update(
            item_id, lambda record, tx: {"priority": RefreshPriority(priority)}, now
        )

    def clear_review_flag(
        self, item_id: str, now: datetime | None = None, conn: sqlite3.Connection | None = None
    ) -> FreshnessRecord:
        """Return a reviewed item to automatic scheduling"""
        now = ensure_utc(now or utcnow())
        return self._update(item_id, lambda record, tx: {"needs_review": False}, now, conn)

    def record_rewrite(
        self,
        item_id: str,
        metadata: dict[str, Any],
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> FreshnessRecord:
        """Store rewritten metadata produced outside a refresh cycle"""
        now = ensure_utc(now or utcnow())
        return self._update(
            item_id,
            lambda record, tx: {"rewritten_metadata": metadata, "rewrite_pending": False},
            now,
            conn,
        )

    def rollback(
        self, item_id: str, target_version: int, now: datetime | None = None
    ) -> FreshnessRecord:
        """
        Restore the rewritten metadata stored with an earlier content version

        The version history is left as it is, so the next check still compares
        against the latest fetched snapshot.

        Args:
            item_id: Tracked item
            target_version: Version whose rewritten metadata becomes current
            now: Current time

        Returns:
            FreshnessRecord: The updated record

        Raises:
            ItemNotTrackedError: If the item has no record
            VersionNotFoundError: If the item has no such version
        """
        now = ensure_utc(now or utcnow())
        version = self.version_store.get_version(item_id, target_version)
        if version is None:
            if self.get(item_id) is None:
                raise ItemNotTrackedError(item_id)
            raise VersionNotFoundError(item_id, target_version)

        updated = self._update(
            item_id,
            lambda record, tx: {
                "rewritten_metadata": version.rewritten_meta_snapshot,
                "rewrite_pending": False,
            },
            now,
        )
        logger.info(f"Rolled back {item_id} to version {target_version}")
        return updated

    def due_for_check(self, now: datetime | None = None) -> DueRecords:
        """
        Records whose next check is due

        Only auto-refresh records not awaiting review are included.

        Args:
            now: Current time

        Returns:
            Restartable iterable of FreshnessRecord, most urgent first
        """
        return DueRecords(self.database, self.settings, ensure_utc(now or utcnow()))

    def refresh_scores(self, now: datetime | None = None) -> int:
        """
        Recompute staleness score and status of every scheduled record

        Records that are being processed or have failed keep their status.

        Returns:
            Number of records whose score or status changed
        """
        now = ensure_utc(now or utcnow())
        updated = 0
        last_id = ""

        while True:
            with self.database.transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM freshness_records
                    WHERE auto_refresh_enabled = 1
                      AND status NOT IN ('processing', 'failed')
                      AND item_id > ?
                    ORDER BY item_id LIMIT ?
                    """,
                    (last_id, DUE_PAGE_SIZE),
                ).fetchall()

                for row in rows:
                    record = _row_to_record(row)
                    score = self.compute_staleness_score(record, now)
                    status = self.status_for(record, score, now)
                    if score == record.staleness_score and status == record.status:
                        continue
                    cursor = conn.execute(
                        """
                        UPDATE freshness_records
                        SET staleness_score = ?, status = ?, revision = revision + 1, updated_at = ?
                        WHERE item_id = ? AND revision = ?
                        """,
                        (score, status.value, to_db_time(now), record.item_id, record.revision),
                    )
                    updated += cursor.rowcount

            if len(rows) < DUE_PAGE_SIZE:
                break
            last_id = rows[-1]["item_id"]

        logger.info(f"Refreshed staleness scores: {updated} record(s) changed")
        return updated

    def get(self, item_id: str) -> FreshnessRecord | None:
        """Fetch an item's record"""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM freshness_records WHERE item_id = ?", (item_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def remove(self, item_id: str) -> bool:
        """
        Stop tracking an item

        Versions, queue entries and history are removed with the record.

        Returns:
            True if a record was deleted
        """
        with self.database.transaction() as conn:
            cursor = conn.execute("DELETE FROM freshness_records WHERE item_id = ?", (item_id,))
            conn.execute("DELETE FROM refresh_alerts WHERE item_id = ?", (item_id,))

        removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Stopped tracking {item_id}")
        return removed

    def _next_check(self, record: FreshnessRecord, now: datetime) -> datetime | None:
        if not record.auto_refresh_enabled:
            return None
        return now + timedelta(hours=record.refresh_interval_hours)

    def _hours_since_check(self, record: FreshnessRecord, now: datetime | None) -> float:
        now = ensure_utc(now or utcnow())
        elapsed = (now - ensure_utc(record.last_checked_at)).total_seconds() / 3600.0
        return max(0.0, elapsed)

    def _update(
        self,
        item_id: str,
        mutate: Mutation,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> FreshnessRecord:
        """
        Read-modify-write a record, conditional on its revision

        Args:
            item_id: Record to update
            mutate: Returns the column changes for the current record
            now: Current time, stored as updated_at
            conn: Connection of an enclosing transaction; disables retrying

        Raises:
            ItemNotTrackedError: If the item has no record
            ConcurrencyConflict: If every attempt lost a race
        """
        attempts = 1 if conn is not None else UPDATE_MAX_ATTEMPTS

        for attempt in range(1, attempts + 1):
            try:
                with self.database.transaction(conn) as tx:
                    row = tx.execute(
                        "SELECT * FROM freshness_records WHERE item_id = ?", (item_id,)
                    ).fetchone()
                    if row is None:
                        raise ItemNotTrackedError(item_id)

                    record = _row_to_record(row)
                    changes = mutate(record, tx)
                    changes["updated_at"] = now
                    assignments = ", ".join(f"{column} = ?" for column in changes)

                    cursor = tx.execute(
                        f"UPDATE freshness_records SET {assignments}, revision = revision + 1 "
                        "WHERE item_id = ? AND revision = ?",
                        [*(_to_column(v) for v in changes.values()), item_id, record.revision],
                    )
                    if cursor.rowcount != 1:
                        # Rolls back anything mutate() wrote, e.g. an appended version
                        raise ConcurrencyConflict(f"Record {item_id} changed concurrently")
            except ConcurrencyConflict:
                if conn is not None or attempt == attempts:
                    raise
                logger.warning(
                    f"Record update conflict for {item_id} (attempt {attempt}/{attempts})"
                )
                continue

            return record.model_copy(update={**changes, "revision": record.revision + 1})

        raise ConcurrencyConflict(f"Could not update {item_id} after {attempts} attempts")
