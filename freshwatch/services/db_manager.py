"""SQLite database manager: connections, schema, transactions and integrity checks"""

import json
import logging
import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from freshwatch.config import config
from freshwatch.services.errors import IntegrityCheckError

logger = logging.getLogger(__name__)

REQUIRED_TABLES = {
    "freshness_records",
    "content_versions",
    "refresh_queue",
    "refresh_history",
    "freshness_analytics",
    "freshness_config",
    "refresh_alerts",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS freshness_records (
    item_id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'fresh'
        CHECK (status IN ('fresh', 'stale', 'expired', 'processing', 'failed')),
    last_checked_at TEXT NOT NULL,
    last_updated_at TEXT NOT NULL,
    next_check_at TEXT,
    content_hash TEXT NOT NULL,
    metadata_hash TEXT NOT NULL,
    images_hash TEXT,
    content_version INTEGER NOT NULL DEFAULT 1 CHECK (content_version >= 1),
    staleness_score REAL NOT NULL DEFAULT 0.0
        CHECK (staleness_score >= 0.0 AND staleness_score <= 100.0),
    refresh_interval_hours INTEGER NOT NULL DEFAULT 24 CHECK (refresh_interval_hours > 0),
    priority TEXT NOT NULL DEFAULT 'normal'
        CHECK (priority IN ('low', 'normal', 'high', 'critical')),
    auto_refresh_enabled INTEGER NOT NULL DEFAULT 1,
    check_count INTEGER NOT NULL DEFAULT 0,
    update_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_change_detected_at TEXT,
    needs_review INTEGER NOT NULL DEFAULT 0,
    rewrite_pending INTEGER NOT NULL DEFAULT 0,
    rewritten_metadata TEXT,
    revision INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK ((auto_refresh_enabled = 1) = (next_check_at IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_freshness_records_next_check
ON freshness_records(next_check_at);

CREATE INDEX IF NOT EXISTS idx_freshness_records_status
ON freshness_records(status);

CREATE TABLE IF NOT EXISTS content_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL REFERENCES freshness_records(item_id) ON DELETE CASCADE,
    version_number INTEGER NOT NULL CHECK (version_number >= 1),
    content_hash TEXT NOT NULL,
    metadata_hash TEXT NOT NULL,
    images_hash TEXT,
    changes_detected TEXT NOT NULL DEFAULT '{}',
    change_summary TEXT,
    change_score REAL NOT NULL DEFAULT 0.0,
    detection_method TEXT NOT NULL
        CHECK (detection_method IN ('content_hash', 'metadata_diff', 'image_change', 'full_scan')),
    original_meta_snapshot TEXT NOT NULL DEFAULT '{}',
    rewritten_meta_snapshot TEXT,
    images_snapshot TEXT NOT NULL DEFAULT '[]',
    processing_duration_ms INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE (item_id, version_number)
);

CREATE TABLE IF NOT EXISTS refresh_queue (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL REFERENCES freshness_records(item_id) ON DELETE CASCADE,
    priority TEXT NOT NULL DEFAULT 'normal'
        CHECK (priority IN ('low', 'normal', 'high', 'critical')),
    refresh_type TEXT NOT NULL DEFAULT 'scheduled'
        CHECK (refresh_type IN ('scheduled', 'manual', 'batch')),
    trigger_reason TEXT,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
    worker_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    reclaim_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    error_code TEXT,
    batch_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_refresh_queue_active_item
ON refresh_queue(item_id) WHERE status IN ('pending', 'processing');

CREATE INDEX IF NOT EXISTS idx_refresh_queue_status_scheduled
ON refresh_queue(status, scheduled_at);

CREATE INDEX IF NOT EXISTS idx_refresh_queue_batch_id
ON refresh_queue(batch_id);

CREATE TABLE IF NOT EXISTS refresh_history (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL REFERENCES freshness_records(item_id) ON DELETE CASCADE,
    queue_id TEXT REFERENCES refresh_queue(id) ON DELETE SET NULL,
    refresh_type TEXT NOT NULL,
    trigger_reason TEXT,
    success INTEGER NOT NULL,
    changes_found INTEGER NOT NULL DEFAULT 0,
    content_updated INTEGER NOT NULL DEFAULT 0,
    rewrite_invoked INTEGER NOT NULL DEFAULT 0,
    processing_duration_ms INTEGER NOT NULL DEFAULT 0,
    network_requests_count INTEGER NOT NULL DEFAULT 0,
    bytes_processed INTEGER NOT NULL DEFAULT 0,
    changes_detected TEXT NOT NULL DEFAULT '{}',
    old_content_hash TEXT,
    new_content_hash TEXT,
    error_message TEXT,
    error_code TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_refresh_history_item_id
ON refresh_history(item_id);

CREATE INDEX IF NOT EXISTS idx_refresh_history_started_at
ON refresh_history(started_at);

CREATE TABLE IF NOT EXISTS freshness_analytics (
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    period_type TEXT NOT NULL,
    total_refreshes_attempted INTEGER NOT NULL DEFAULT 0,
    successful_refreshes INTEGER NOT NULL DEFAULT 0,
    failed_refreshes INTEGER NOT NULL DEFAULT 0,
    changes_detected_count INTEGER NOT NULL DEFAULT 0,
    avg_processing_duration_ms REAL,
    median_processing_duration_ms REAL,
    total_processing_time_ms INTEGER NOT NULL DEFAULT 0,
    total_network_requests INTEGER NOT NULL DEFAULT 0,
    total_bytes_processed INTEGER NOT NULL DEFAULT 0,
    total_items_tracked INTEGER NOT NULL DEFAULT 0,
    fresh_items_count INTEGER NOT NULL DEFAULT 0,
    stale_items_count INTEGER NOT NULL DEFAULT 0,
    expired_items_count INTEGER NOT NULL DEFAULT 0,
    failed_items_count INTEGER NOT NULL DEFAULT 0,
    avg_staleness_score REAL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (period_start, period_end, period_type)
);

CREATE TABLE IF NOT EXISTS freshness_config (
    config_key TEXT PRIMARY KEY,
    config_value TEXT NOT NULL,
    config_type TEXT NOT NULL
        CHECK (config_type IN ('string', 'number', 'boolean', 'object', 'array')),
    description TEXT,
    category TEXT NOT NULL DEFAULT 'general',
    is_system INTEGER NOT NULL DEFAULT 0,
    validation_schema TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS refresh_alerts (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    item_id TEXT NOT NULL,
    queue_id TEXT,
    message TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_refresh_alerts_item_id
ON refresh_alerts(item_id);
"""


def dump_json(value: Any) -> str | None:
    """Serialize a JSON column value"""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def load_json(value: str | None, default: Any = None) -> Any:
    """Deserialize a JSON column value"""
    if value is None:
        return default
    return json.loads(value)


class Database:
    """SQLite database shared by all freshness services"""

    def __init__(self, db_path: str | None = None, busy_timeout: float | None = None):
        """
        Initialize database manager

        Args:
            db_path: SQLite file path, or ":memory:" (defaults to config.db_path)
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path or config.db_path
        self.busy_timeout = (
            config.db_busy_timeout_seconds if busy_timeout is None else busy_timeout
        )
        # For :memory: databases, we need to keep a persistent connection
        # because each connection gets a separate in-memory database
        self._memory_conn: sqlite3.Connection | None = None
        self._memory_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        """
        Create and configure a new database connection

        Connections run in autocommit mode; transactions are opened explicitly
        with BEGIN IMMEDIATE so that check-then-act sequences hold the write lock.
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection for a unit of work

        For :memory: databases, yields the persistent connection (serialized by a lock).
        For file databases, opens a new connection and closes it afterwards.
        """
        if self.is_memory:
            with self._memory_lock:
                if self._memory_conn is None:
                    self._memory_conn = self._connect()
                yield self._memory_conn
            return

        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside a write transaction

        Args:
            conn: Optional connection already inside a transaction; the block joins it

        Yields:
            Connection holding the database write lock
        """
        if conn is not None:
            yield conn
            return

        with self.connection() as new_conn:
            new_conn.execute("BEGIN IMMEDIATE")
            try:
                yield new_conn
            except BaseException:
                if new_conn.in_transaction:
                    new_conn.execute("ROLLBACK")
                raise
            new_conn.execute("COMMIT")

    def initialize(self) -> None:
        """Create the schema if it does not exist yet"""
        if not self.is_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            if not self.is_memory:
                # WAL lets readers proceed while a worker holds the write lock
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

        logger.info(f"Database initialized: {self.db_path}")

    def check_integrity(self) -> bool:
        """
        Run SQLite's integrity check and verify required tables exist

        Raises:
            IntegrityCheckError: If the file is missing, corrupt or incomplete
        """
        if not self.is_memory and not os.path.exists(self.db_path):
            error_msg = f"Database file does not exist: {self.db_path}"
            logger.error(error_msg)
            raise IntegrityCheckError(error_msg)

        with self.connection() as conn:
            result = conn.execute("PRAGMA integrity_check").fetchone()

            if not result or result[0] != "ok":
                error_msg = f"Database integrity check failed: {result[0] if result else None}"
                logger.error(error_msg)
                raise IntegrityCheckError(error_msg)

            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            tables = {row[0] for row in rows}

        if not REQUIRED_TABLES.issubset(tables):
            missing = REQUIRED_TABLES - tables
            error_msg = f"Missing required tables: {sorted(missing)}"
            logger.error(error_msg)
            raise IntegrityCheckError(error_msg)

        logger.debug(f"Database integrity check passed: {self.db_path}")
        return True

    def close(self) -> None:
        """Close the persistent connection of a :memory: database"""
        with self._memory_lock:
            if self._memory_conn is not None:
                self._memory_conn.close()
                self._memory_conn = None
