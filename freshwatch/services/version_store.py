"""Append-only content version history"""

import logging
import sqlite3
from collections.abc import Iterator
from typing import Any

from freshwatch.config import config
from freshwatch.models.content import ChangeResult, ContentSnapshot, ContentVersion
from freshwatch.services.db_manager import Database, dump_json, load_json
from freshwatch.services.errors import ConcurrencyConflict
from freshwatch.utils.timestamps import from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 50


def _row_to_version(row: sqlite3.Row) -> ContentVersion:
    return ContentVersion(
        item_id=row["item_id"],
        version_number=row["version_number"],
        content_hash=row["content_hash"],
        metadata_hash=row["metadata_hash"],
        images_hash=row["images_hash"],
        changes_detected=load_json(row["changes_detected"], {}),
        change_summary=row["change_summary"],
        change_score=row["change_score"],
        detection_method=row["detection_method"],
        original_meta_snapshot=load_json(row["original_meta_snapshot"], {}),
        rewritten_meta_snapshot=load_json(row["rewritten_meta_snapshot"]),
        images_snapshot=load_json(row["images_snapshot"], []),
        processing_duration_ms=row["processing_duration_ms"],
        created_at=from_db_time(row["created_at"]),
    )


class VersionHistory:
    """
    Newest-first view over an item's versions

    Each iteration starts a fresh keyset-paged scan, so the view can be iterated
    more than once and holds no cursor open between pages.
    """

    def __init__(
        self,
        database: Database,
        item_id: str,
        limit: int | None = None,
        cursor: int | None = None,
        page_size: int = HISTORY_PAGE_SIZE,
    ):
        self.database = database
        self.item_id = item_id
        self.limit = limit
        self.cursor = cursor
        self.page_size = page_size

    def __iter__(self) -> Iterator[ContentVersion]:
        remaining = self.limit
        before = self.cursor

        while remaining is None or remaining > 0:
            page_size = self.page_size if remaining is None else min(self.page_size, remaining)
            with self.database.connection() as conn:
                if before is None:
                    rows = conn.execute(
                        "SELECT * FROM content_versions WHERE item_id = ? "
                        "ORDER BY version_number DESC LIMIT ?",
                        (self.item_id, page_size),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM content_versions WHERE item_id = ? AND version_number < ? "
                        "ORDER BY version_number DESC LIMIT ?",
                        (self.item_id, before, page_size),
                    ).fetchall()

            for row in rows:
                yield _row_to_version(row)

            if len(rows) < page_size:
                return
            before = rows[-1]["version_number"]
            if remaining is not None:
                remaining -= len(rows)


class VersionStore:
    """Persist immutable ContentVersion rows with gapless per-item numbering"""

    def __init__(self, database: Database, max_attempts: int | None = None):
        """
        Initialize version store

        Args:
            database: Initialized database
            max_attempts: Attempts for an append that loses a race (defaults to config)
        """
        self.database = database
        self.max_attempts = max_attempts or config.version_append_max_attempts

    def append_version(
        self,
        item_id: str,
        snapshot: ContentSnapshot,
        change: ChangeResult,
        *,
        rewritten_metadata: dict[str, Any] | None = None,
        processing_duration_ms: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ContentVersion:
        """
        Append the next version of an item

        The insert only happens if the item's highest version is still the one
        read beforehand; a concurrent append makes it affect zero rows (or hit the
        unique constraint) and the append is retried.

        Args:
            item_id: Owning item
            snapshot: Snapshot the version captures
            change: Change result that produced the version
            rewritten_metadata: Rewritten metadata in effect for this version
            processing_duration_ms: Duration of the refresh that produced it
            conn: Connection of an enclosing transaction; disables retrying

        Returns:
            ContentVersion: The stored version

        Raises:
            ConcurrencyConflict: If every attempt lost a race
        """
        attempts = 1 if conn is not None else self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                with self.database.transaction(conn) as tx:
                    version = self._try_append(
                        tx, item_id, snapshot, change, rewritten_metadata, processing_duration_ms
                    )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" not in str(e):
                    raise
                version = None

            if version is not None:
                logger.debug(f"Appended version {version.version_number} for {item_id}")
                return version

            logger.warning(
                f"Version append conflict for {item_id} (attempt {attempt}/{attempts})"
            )

        raise ConcurrencyConflict(f"Could not append version for {item_id} after {attempts} attempts")

    def _try_append(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        snapshot: ContentSnapshot,
        change: ChangeResult,
        rewritten_metadata: dict[str, Any] | None,
        processing_duration_ms: int | None,
    ) -> ContentVersion | None:
        expected = conn.execute(
            "SELECT COALESCE(MAX(version_number), 0) FROM content_versions WHERE item_id = ?",
            (item_id,),
        ).fetchone()[0]

        version = ContentVersion(
            item_id=item_id,
            version_number=expected + 1,
            content_hash=change.hashes.content_hash,
            metadata_hash=change.hashes.metadata_hash,
            images_hash=change.hashes.images_hash,
            changes_detected=change.changed_fields,
            change_summary=change.summary,
            change_score=change.change_score,
            detection_method=change.detection_method,
            original_meta_snapshot=snapshot.metadata,
            rewritten_meta_snapshot=rewritten_metadata,
            images_snapshot=snapshot.images,
            processing_duration_ms=processing_duration_ms,
            created_at=utcnow(),
        )

        cursor = conn.execute(
            """
            INSERT INTO content_versions (
                item_id, version_number, content_hash, metadata_hash, images_hash,
                changes_detected, change_summary, change_score, detection_method,
                original_meta_snapshot, rewritten_meta_snapshot, images_snapshot,
                processing_duration_ms, created_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            WHERE (
                SELECT COALESCE(MAX(version_number), 0)
                FROM content_versions WHERE item_id = ?
            ) = ?
            """,
            (
                version.item_id,
                version.version_number,
                version.content_hash,
                version.metadata_hash,
                version.images_hash,
                dump_json(version.changes_detected),
                version.change_summary,
                version.change_score,
                version.detection_method.value,
                dump_json(version.original_meta_snapshot),
                dump_json(version.rewritten_meta_snapshot),
                dump_json(version.images_snapshot),
                version.processing_duration_ms,
                to_db_time(version.created_at),
                item_id,
                expected,
            ),
        )

        if cursor.rowcount != 1:
            return None
        return version

    def history(
        self, item_id: str, limit: int | None = None, cursor: int | None = None
    ) -> VersionHistory:
        """
        Versions of an item, newest first

        Args:
            item_id: Owning item
            limit: Maximum number of versions to yield
            cursor: Only yield versions older than this version number
        """
        return VersionHistory(self.database, item_id, limit=limit, cursor=cursor)

    def latest(self, item_id: str) -> ContentVersion | None:
        """Most recent version of an item"""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM content_versions WHERE item_id = ? "
                "ORDER BY version_number DESC LIMIT 1",
                (item_id,),
            ).fetchone()
        return _row_to_version(row) if row else None

    def get_version(self, item_id: str, version_number: int) -> ContentVersion | None:
        """Fetch one specific version"""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM content_versions WHERE item_id = ? AND version_number = ?",
                (item_id, version_number),
            ).fetchone()
        return _row_to_version(row) if row else None

    def count(self, item_id: str) -> int:
        """Number of versions stored for an item"""
        with self.database.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM content_versions WHERE item_id = ?", (item_id,)
            ).fetchone()[0]
