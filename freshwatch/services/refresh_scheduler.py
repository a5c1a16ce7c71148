"""Refresh queue: enqueueing, claiming, completion and lease recovery"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from freshwatch.config import config
from freshwatch.models.analytics import Alert, AlertKind
from freshwatch.models.freshness import RefreshPriority
from freshwatch.models.freshness_settings import FreshnessSettings
from freshwatch.models.queue import (
    ErrorCode,
    QueueStatus,
    RefreshHistoryEntry,
    RefreshOutcome,
    RefreshQueueEntry,
    RefreshType,
)
from freshwatch.services.alerting import AlertService
from freshwatch.services.config_store import ConfigStore
from freshwatch.services.db_manager import Database, dump_json, load_json
from freshwatch.services.errors import ExhaustedRetries, ItemNotTrackedError
from freshwatch.services.freshness_tracker import FreshnessTracker
from freshwatch.services.telemetry import TelemetryService
from freshwatch.utils.timestamps import ensure_utc, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED)


def _row_to_entry(row: sqlite3.Row) -> RefreshQueueEntry:
    return RefreshQueueEntry(
        id=row["id"],
        item_id=row["item_id"],
        priority=row["priority"],
        refresh_type=row["refresh_type"],
        trigger_reason=row["trigger_reason"],
        scheduled_at=from_db_time(row["scheduled_at"]),
        started_at=from_db_time(row["started_at"]),
        completed_at=from_db_time(row["completed_at"]),
        status=row["status"],
        worker_id=row["worker_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        reclaim_count=row["reclaim_count"],
        error_message=row["error_message"],
        error_code=row["error_code"],
        batch_id=row["batch_id"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_history(row: sqlite3.Row) -> RefreshHistoryEntry:
    return RefreshHistoryEntry(
        id=row["id"],
        item_id=row["item_id"],
        queue_id=row["queue_id"],
        refresh_type=row["refresh_type"],
        trigger_reason=row["trigger_reason"],
        success=bool(row["success"]),
        changes_found=bool(row["changes_found"]),
        content_updated=bool(row["content_updated"]),
        rewrite_invoked=bool(row["rewrite_invoked"]),
        processing_duration_ms=row["processing_duration_ms"],
        network_requests_count=row["network_requests_count"],
        bytes_processed=row["bytes_processed"],
        changes_detected=load_json(row["changes_detected"], {}),
        old_content_hash=row["old_content_hash"],
        new_content_hash=row["new_content_hash"],
        error_message=row["error_message"],
        error_code=row["error_code"],
        started_at=from_db_time(row["started_at"]),
        completed_at=from_db_time(row["completed_at"]),
    )


class RefreshScheduler:
    """
    Work queue of item revalidations

    Entries move pending -> processing -> completed/failed. A failed attempt with
    retries left goes back to pending after an exponential backoff; a pending
    entry is cancelled when a manual refresh replaces it. At most one entry per
    item is pending or processing at any time.
    """

    def __init__(
        self,
        database: Database,
        config_store: ConfigStore,
        tracker: FreshnessTracker,
        alerts: AlertService | None = None,
        telemetry: TelemetryService | None = None,
    ):
        """
        Initialize refresh scheduler

        Args:
            database: Initialized database
            config_store: Source of the current freshness settings
            tracker: Freshness tracker updated on claim and completion
            alerts: Alert sink (created on the same database if omitted)
            telemetry: Optional OpenTelemetry sink for attempt logs
        """
        self.database = database
        self.config_store = config_store
        self.tracker = tracker
        self.alerts = alerts or AlertService(database, telemetry)
        self.telemetry = telemetry

    @property
    def settings(self) -> FreshnessSettings:
        return self.config_store.settings

    def enqueue(
        self,
        item_id: str,
        priority: RefreshPriority = RefreshPriority.NORMAL,
        scheduled_at: datetime | None = None,
        *,
        refresh_type: RefreshType = RefreshType.SCHEDULED,
        batch_id: str | None = None,
        trigger_reason: str | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RefreshQueueEntry | None:
        """
        Queue a refresh of an item

        Args:
            item_id: Item to refresh
            priority: Queue priority
            scheduled_at: Earliest claim time (defaults to now)
            refresh_type: What caused the refresh
            batch_id: Optional grouping for reporting
            trigger_reason: Free-form reason
            now: Current time
            conn: Connection of an enclosing transaction

        Returns:
            The new entry, or None if the item already has an active entry

        Raises:
            ItemNotTrackedError: If the item has no freshness record
        """
        now = ensure_utc(now or utcnow())
        entry = RefreshQueueEntry(
            id=str(uuid.uuid4()),
            item_id=item_id,
            priority=RefreshPriority(priority),
            refresh_type=RefreshType(refresh_type),
            trigger_reason=trigger_reason,
            scheduled_at=ensure_utc(scheduled_at) if scheduled_at else now,
            status=QueueStatus.PENDING,
            max_retries=self.settings.retry_max_attempts,
            batch_id=batch_id,
            created_at=now,
            updated_at=now,
        )

        try:
            with self.database.transaction(conn) as tx:
                if not tx.execute(
                    "SELECT 1 FROM freshness_records WHERE item_id = ?", (item_id,)
                ).fetchone():
                    raise ItemNotTrackedError(item_id)

                if self._active_row(tx, item_id) is not None:
                    logger.debug(f"Refresh for {item_id} already queued, skipping")
                    return None

                tx.execute(
                    """
                    INSERT INTO refresh_queue (
                        id, item_id, priority, refresh_type, trigger_reason, scheduled_at,
                        status, max_retries, batch_id, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.item_id,
                        entry.priority.value,
                        entry.refresh_type.value,
                        entry.trigger_reason,
                        to_db_time(entry.scheduled_at),
                        entry.status.value,
                        entry.max_retries,
                        entry.batch_id,
                        to_db_time(entry.created_at),
                        to_db_time(entry.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            # The partial unique index caught a concurrent enqueue
            if "UNIQUE" not in str(e) or conn is not None:
                raise
            logger.debug(f"Concurrent enqueue for {item_id} detected, skipping")
            return None

        logger.info(
            f"Queued {entry.refresh_type.value} refresh for {item_id} "
            f"(priority={entry.priority.value}, scheduled_at={entry.scheduled_at.isoformat()})"
        )
        return entry

    def force_refresh(self, item_id: str, now: datetime | None = None) -> RefreshQueueEntry | None:
        """
        Replace any pending refresh of an item with an immediate manual one

        Also returns an item flagged for review to automatic scheduling.

        Returns:
            The new entry, or None if a refresh of the item is already processing

        Raises:
            ItemNotTrackedError: If the item has no freshness record
        """
        now = ensure_utc(now or utcnow())

        with self.database.transaction() as tx:
            record = tx.execute(
                "SELECT priority, needs_review FROM freshness_records WHERE item_id = ?",
                (item_id,),
            ).fetchone()
            if record is None:
                raise ItemNotTrackedError(item_id)

            active = self._active_row(tx, item_id)
            if active is not None and active["status"] == QueueStatus.PROCESSING.value:
                logger.info(f"Refresh of {item_id} already in progress, manual refresh skipped")
                return None

            if active is not None:
                tx.execute(
                    """
                    UPDATE refresh_queue
                    SET status = 'cancelled', completed_at = ?, updated_at = ?,
                        error_message = 'Superseded by manual refresh'
                    WHERE id = ? AND status = 'pending'
                    """,
                    (to_db_time(now), to_db_time(now), active["id"]),
                )

            priority = RefreshPriority.HIGH
            if record["priority"] == RefreshPriority.CRITICAL.value:
                priority = RefreshPriority.CRITICAL

            if record["needs_review"]:
                self.tracker.clear_review_flag(item_id, now, conn=tx)

            entry = self.enqueue(
                item_id,
                priority,
                now,
                refresh_type=RefreshType.MANUAL,
                trigger_reason="manual refresh",
                now=now,
                conn=tx,
            )

        return entry

    def claim_next(
        self, worker_id: str, batch_size: int | None = None, now: datetime | None = None
    ) -> list[RefreshQueueEntry]:
        """
        Atomically claim due pending entries for a worker

        The number claimed is bounded by the batch size, the configured batch
        limit and the free concurrency slots. Claimed items are marked processing.

        Args:
            worker_id: Identifier of the claiming worker
            batch_size: Requested number of entries (defaults to the batch limit)
            now: Current time

        Returns:
            Claimed entries, highest priority first
        """
        now = ensure_utc(now or utcnow())
        settings = self.settings

        if settings.enable_batch_processing:
            requested = settings.batch_size_limit if batch_size is None else batch_size
            limit = min(requested, settings.batch_size_limit)
        else:
            limit = 1 if batch_size is None else min(batch_size, 1)

        if limit <= 0:
            return []

        weights = [settings.weight_for(p) for p in RefreshPriority]
        cases = " ".join(f"WHEN '{p.value}' THEN ?" for p in RefreshPriority)
        claimed: list[RefreshQueueEntry] = []

        with self.database.transaction() as tx:
            processing = tx.execute(
                "SELECT COUNT(*) FROM refresh_queue WHERE status = 'processing'"
            ).fetchone()[0]
            limit = min(limit, settings.max_concurrent_refreshes - processing)
            if limit <= 0:
                logger.debug(f"No free refresh slots for {worker_id} ({processing} processing)")
                return []

            rows = tx.execute(
                f"""
                SELECT * FROM refresh_queue
                WHERE status = 'pending' AND scheduled_at <= ?
                ORDER BY (CASE priority {cases} ELSE 0 END) DESC, scheduled_at ASC, created_at ASC
                LIMIT ?
                """,
                [to_db_time(now), *weights, limit],
            ).fetchall()

            for row in rows:
                cursor = tx.execute(
                    """
                    UPDATE refresh_queue
                    SET status = 'processing', worker_id = ?, started_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (worker_id, to_db_time(now), to_db_time(now), row["id"]),
                )
                if cursor.rowcount != 1:
                    continue

                self.tracker.mark_processing(row["item_id"], now, conn=tx)
                claimed.append(
                    _row_to_entry(row).model_copy(
                        update={
                            "status": QueueStatus.PROCESSING,
                            "worker_id": worker_id,
                            "started_at": now,
                            "updated_at": now,
                        }
                    )
                )

        if claimed:
            logger.info(f"Worker {worker_id} claimed {len(claimed)} refresh(es)")
        return claimed

    def backoff_delay(self, retry_count: int) -> timedelta:
        """Delay before retrying an entry that has already been retried retry_count times"""
        seconds = config.retry_base_delay_seconds * (
            self.settings.retry_backoff_multiplier**retry_count
        )
        return timedelta(seconds=min(seconds, config.retry_max_delay_seconds))

    def complete(
        self,
        entry_id: str,
        outcome: RefreshOutcome,
        worker_id: str,
        now: datetime | None = None,
    ) -> RefreshQueueEntry | None:
        """
        Report the outcome of a claimed entry

        Writes a history row and applies the outcome to the item's record in the
        same transaction. A worker whose claim was reclaimed in the meantime is
        ignored.

        Args:
            entry_id: Claimed entry
            outcome: What the worker observed
            worker_id: Worker that claimed the entry
            now: Current time

        Returns:
            The updated entry, or None if the worker no longer holds the claim
        """
        now = ensure_utc(now or utcnow())

        with self.database.transaction() as tx:
            row = tx.execute("SELECT * FROM refresh_queue WHERE id = ?", (entry_id,)).fetchone()
            if (
                row is None
                or row["status"] != QueueStatus.PROCESSING.value
                or row["worker_id"] != worker_id
            ):
                logger.info(f"Worker {worker_id} lost claim on {entry_id}, outcome discarded")
                return None

            entry = _row_to_entry(row)
            alert: Alert | None = None
            old_hash = tx.execute(
                "SELECT content_hash FROM freshness_records WHERE item_id = ?", (entry.item_id,)
            ).fetchone()

            if outcome.success:
                updated = self._finish(tx, entry, QueueStatus.COMPLETED, now)
                self.tracker.mark_checked(entry.item_id, outcome, now, conn=tx)
            elif outcome.retryable and entry.retry_count + 1 < entry.max_retries:
                retry_at = now + self.backoff_delay(entry.retry_count)
                updated = self._retry(tx, entry, outcome, retry_at, now)
                self.tracker.mark_checked(entry.item_id, outcome, now, retry_at=retry_at, conn=tx)
            else:
                updated = self._finish(tx, entry, QueueStatus.FAILED, now, outcome)
                alert = self._fail_terminally(tx, updated, outcome, now)

            history = self._write_history(
                tx, entry, outcome, old_hash["content_hash"] if old_hash else None
            )

        if alert is not None:
            self.alerts.publish(alert)
        if self.telemetry:
            self.telemetry.log_refresh(history)

        logger.info(
            f"Refresh {entry_id} for {entry.item_id}: {updated.status.value}"
            + (f" (retry {updated.retry_count}/{updated.max_retries})" if not outcome.success else "")
        )
        return updated

    def _finish(
        self,
        conn: sqlite3.Connection,
        entry: RefreshQueueEntry,
        status: QueueStatus,
        now: datetime,
        outcome: RefreshOutcome | None = None,
    ) -> RefreshQueueEntry:
        retry_count = entry.retry_count
        error_message = error_code = None
        if outcome is not None and not outcome.success:
            retry_count += 1
            error_message = outcome.error_message
            error_code = outcome.error_code.value if outcome.error_code else None

        conn.execute(
            """
            UPDATE refresh_queue
            SET status = ?, completed_at = ?, updated_at = ?, retry_count = ?,
                error_message = ?, error_code = ?
            WHERE id = ? AND status = 'processing'
            """,
            (
                status.value,
                to_db_time(now),
                to_db_time(now),
                retry_count,
                error_message,
                error_code,
                entry.id,
            ),
        )
        return entry.model_copy(
            update={
                "status": status,
                "completed_at": now,
                "updated_at": now,
                "retry_count": retry_count,
                "error_message": error_message,
                "error_code": error_code,
            }
        )

    def _retry(
        self,
        conn: sqlite3.Connection,
        entry: RefreshQueueEntry,
        outcome: RefreshOutcome,
        retry_at: datetime,
        now: datetime,
    ) -> RefreshQueueEntry:
        error_code = outcome.error_code.value if outcome.error_code else None
        conn.execute(
            """
            UPDATE refresh_queue
            SET status = 'pending', worker_id = NULL, started_at = NULL, scheduled_at = ?,
                retry_count = retry_count + 1, error_message = ?, error_code = ?, updated_at = ?
            WHERE id = ? AND status = 'processing'
            """,
            (to_db_time(retry_at), outcome.error_message, error_code, to_db_time(now), entry.id),
        )
        return entry.model_copy(
            update={
                "status": QueueStatus.PENDING,
                "worker_id": None,
                "started_at": None,
                "scheduled_at": retry_at,
                "retry_count": entry.retry_count + 1,
                "error_message": outcome.error_message,
                "error_code": error_code,
                "updated_at": now,
            }
        )

    def _fail_terminally(
        self,
        conn: sqlite3.Connection,
        entry: RefreshQueueEntry,
        outcome: RefreshOutcome,
        now: datetime,
    ) -> Alert:
        if outcome.retryable:
            exhausted = ExhaustedRetries(entry.id, entry.retry_count)
            self.tracker.mark_failed(entry.item_id, needs_review=False, now=now, conn=conn)
            return self.alerts.raise_alert(
                AlertKind.RETRIES_EXHAUSTED,
                entry.item_id,
                str(exhausted),
                queue_id=entry.id,
                details={"attempts": entry.retry_count, "error_code": entry.error_code},
                now=now,
                conn=conn,
            )

        self.tracker.mark_failed(entry.item_id, needs_review=True, now=now, conn=conn)
        return self.alerts.raise_alert(
            AlertKind.VALIDATION_FAILED,
            entry.item_id,
            f"Fetched content failed validation: {outcome.error_message}",
            queue_id=entry.id,
            details={"error_code": entry.error_code},
            now=now,
            conn=conn,
        )

    def _write_history(
        self,
        conn: sqlite3.Connection,
        entry: RefreshQueueEntry,
        outcome: RefreshOutcome,
        old_content_hash: str | None,
    ) -> RefreshHistoryEntry:
        change = outcome.change
        changes_found = bool(outcome.success and change is not None and change.has_changes)
        history = RefreshHistoryEntry(
            id=str(uuid.uuid4()),
            item_id=entry.item_id,
            queue_id=entry.id,
            refresh_type=entry.refresh_type,
            trigger_reason=entry.trigger_reason,
            success=outcome.success,
            changes_found=changes_found,
            content_updated=changes_found,
            rewrite_invoked=outcome.rewrite_invoked,
            processing_duration_ms=outcome.processing_duration_ms,
            network_requests_count=outcome.network_requests_count,
            bytes_processed=outcome.bytes_processed,
            changes_detected=change.changed_fields if change else {},
            old_content_hash=old_content_hash,
            new_content_hash=change.hashes.content_hash if change else None,
            error_message=outcome.error_message,
            error_code=outcome.error_code.value if outcome.error_code else None,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
        )

        conn.execute(
            """
            INSERT INTO refresh_history (
                id, item_id, queue_id, refresh_type, trigger_reason, success, changes_found,
                content_updated, rewrite_invoked, processing_duration_ms, network_requests_count,
                bytes_processed, changes_detected, old_content_hash, new_content_hash,
                error_message, error_code, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                history.id,
                history.item_id,
                history.queue_id,
                history.refresh_type.value,
                history.trigger_reason,
                int(history.success),
                int(history.changes_found),
                int(history.content_updated),
                int(history.rewrite_invoked),
                history.processing_duration_ms,
                history.network_requests_count,
                history.bytes_processed,
                dump_json(history.changes_detected),
                history.old_content_hash,
                history.new_content_hash,
                history.error_message,
                history.error_code,
                to_db_time(history.started_at),
                to_db_time(history.completed_at),
            ),
        )
        return history

    def reclaim_abandoned(
        self, lease_timeout: timedelta | None = None, now: datetime | None = None
    ) -> list[RefreshQueueEntry]:
        """
        Take back entries whose worker exceeded the lease

        A reclaimed entry returns to pending. An entry abandoned
        config.reclaim_fail_threshold times fails terminally instead, so an item
        that keeps crashing or hanging its worker stops cycling through the queue.

        Args:
            lease_timeout: Maximum processing time (defaults to config)
            now: Current time

        Returns:
            Reclaimed entries, pending or failed
        """
        now = ensure_utc(now or utcnow())
        lease_timeout = lease_timeout or timedelta(seconds=config.lease_timeout_seconds)
        cutoff = now - lease_timeout
        reclaimed: list[RefreshQueueEntry] = []
        alerts: list[Alert] = []

        with self.database.transaction() as tx:
            rows = tx.execute(
                "SELECT * FROM refresh_queue WHERE status = 'processing' AND started_at < ?",
                (to_db_time(cutoff),),
            ).fetchall()

            for row in rows:
                reclaim_count = row["reclaim_count"] + 1
                if reclaim_count >= config.reclaim_fail_threshold:
                    entry = self._abandon(tx, row, reclaim_count, now)
                    if entry is None:
                        continue
                    reclaimed.append(entry)
                    self.tracker.mark_failed(entry.item_id, needs_review=False, now=now, conn=tx)
                    alerts.append(
                        self.alerts.raise_alert(
                            AlertKind.RETRIES_EXHAUSTED,
                            entry.item_id,
                            entry.error_message,
                            queue_id=entry.id,
                            details={
                                "reclaim_count": reclaim_count,
                                "error_code": entry.error_code,
                            },
                            now=now,
                            conn=tx,
                        )
                    )
                    continue

                cursor = tx.execute(
                    """
                    UPDATE refresh_queue
                    SET status = 'pending', worker_id = NULL, started_at = NULL,
                        reclaim_count = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing' AND worker_id IS ?
                    """,
                    (reclaim_count, to_db_time(now), row["id"], row["worker_id"]),
                )
                if cursor.rowcount != 1:
                    continue

                entry = _row_to_entry(row).model_copy(
                    update={
                        "status": QueueStatus.PENDING,
                        "worker_id": None,
                        "started_at": None,
                        "reclaim_count": reclaim_count,
                        "updated_at": now,
                    }
                )
                reclaimed.append(entry)
                self.tracker.release_processing(entry.item_id, now, conn=tx)

                logger.warning(
                    f"Reclaimed {entry.id} for {entry.item_id} from worker {row['worker_id']} "
                    f"(reclaim #{entry.reclaim_count})"
                )
                if entry.reclaim_count == config.reclaim_alert_threshold:
                    alerts.append(
                        self.alerts.raise_alert(
                            AlertKind.REPEATED_RECLAIM,
                            entry.item_id,
                            f"Refresh {entry.id} abandoned {entry.reclaim_count} times",
                            queue_id=entry.id,
                            details={"reclaim_count": entry.reclaim_count},
                            now=now,
                            conn=tx,
                        )
                    )

        for alert in alerts:
            self.alerts.publish(alert)
        return reclaimed

    def _abandon(
        self, conn: sqlite3.Connection, row: sqlite3.Row, reclaim_count: int, now: datetime
    ) -> RefreshQueueEntry | None:
        message = f"Refresh {row['id']} abandoned {reclaim_count} times, giving up"
        cursor = conn.execute(
            """
            UPDATE refresh_queue
            SET status = 'failed', completed_at = ?, updated_at = ?, reclaim_count = ?,
                error_message = ?, error_code = ?
            WHERE id = ? AND status = 'processing' AND worker_id IS ?
            """,
            (
                to_db_time(now),
                to_db_time(now),
                reclaim_count,
                message,
                ErrorCode.LEASE_EXPIRED.value,
                row["id"],
                row["worker_id"],
            ),
        )
        if cursor.rowcount != 1:
            return None

        logger.error(f"{message} (item {row['item_id']}, last worker {row['worker_id']})")
        return _row_to_entry(row).model_copy(
            update={
                "status": QueueStatus.FAILED,
                "completed_at": now,
                "updated_at": now,
                "reclaim_count": reclaim_count,
                "error_message": message,
                "error_code": ErrorCode.LEASE_EXPIRED.value,
            }
        )

    def get_entry(self, entry_id: str) -> RefreshQueueEntry | None:
        """Fetch a queue entry by id"""
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM refresh_queue WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def active_entry(self, item_id: str) -> RefreshQueueEntry | None:
        """The pending or processing entry of an item, if any"""
        with self.database.connection() as conn:
            row = self._active_row(conn, item_id)
        return _row_to_entry(row) if row else None

    def list_entries(self, item_id: str, limit: int = 50) -> list[RefreshQueueEntry]:
        """Entries of an item, newest first"""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_queue WHERE item_id = ? ORDER BY created_at DESC LIMIT ?",
                (item_id, limit),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def list_history(self, item_id: str, limit: int = 50) -> list[RefreshHistoryEntry]:
        """Executed attempts of an item, newest first"""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_history WHERE item_id = ? "
                "ORDER BY started_at DESC, completed_at DESC LIMIT ?",
                (item_id, limit),
            ).fetchall()
        return [_row_to_history(row) for row in rows]

    def queue_depth(self) -> dict[str, int]:
        """Number of entries per status"""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM refresh_queue GROUP BY status"
            ).fetchall()
        depth = {status.value: 0 for status in QueueStatus}
        depth.update({row["status"]: row["n"] for row in rows})
        return depth

    def purge_terminal(self, older_than: datetime) -> int:
        """
        Delete terminal entries completed before a cutoff

        History rows keep their data; their queue reference is cleared.

        Returns:
            Number of entries deleted
        """
        statuses = [status.value for status in TERMINAL_STATUSES]
        with self.database.transaction() as tx:
            cursor = tx.execute(
                f"""
                DELETE FROM refresh_queue
                WHERE status IN ({", ".join("?" for _ in statuses)}) AND completed_at < ?
                """,
                [*statuses, to_db_time(ensure_utc(older_than))],
            )

        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} terminal queue entries")
        return cursor.rowcount

    def _active_row(self, conn: sqlite3.Connection, item_id: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM refresh_queue WHERE item_id = ? AND status IN ('pending', 'processing')",
            (item_id,),
        ).fetchone()
