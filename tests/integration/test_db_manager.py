"""Integration tests for Database"""

import os
import sqlite3

import pytest

from freshwatch.services.db_manager import REQUIRED_TABLES, Database
from freshwatch.services.errors import IntegrityCheckError


class TestDatabase:
    """Test schema creation, transactions and integrity checks"""

    def test_initialize_creates_schema(self, database):
        """Test that every required table exists after initialize"""
        with database.connection() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()

        assert REQUIRED_TABLES.issubset({row[0] for row in rows})

    def test_initialize_is_idempotent(self, database):
        database.initialize()
        assert database.check_integrity() is True

    def test_wal_mode_enabled(self, database):
        with database.connection() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_integrity_check_missing_database(self, temp_dir):
        """Test integrity check fails for non-existent database"""
        db = Database(os.path.join(temp_dir, "missing.db"))

        with pytest.raises(IntegrityCheckError, match="does not exist"):
            db.check_integrity()

    def test_integrity_check_missing_tables(self, temp_dir):
        """Test integrity check fails for database with missing tables"""
        db_path = os.path.join(temp_dir, "incomplete.db")

        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE freshness_records (item_id TEXT PRIMARY KEY)")
        conn.commit()
        conn.close()

        with pytest.raises(IntegrityCheckError, match="Missing required tables"):
            Database(db_path).check_integrity()

    def test_transaction_rolls_back_on_error(self, database):
        with pytest.raises(RuntimeError):
            with database.transaction() as conn:
                conn.execute(
                    "INSERT INTO refresh_alerts (id, kind, item_id, message, created_at) "
                    "VALUES ('a1', 'retries_exhausted', 'item-1', 'msg', '2025-01-01')"
                )
                raise RuntimeError("boom")

        with database.connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM refresh_alerts").fetchone()[0]
        assert count == 0

    def test_nested_transaction_joins_outer(self, database):
        """Test that passing a connection joins the enclosing transaction"""
        with pytest.raises(RuntimeError):
            with database.transaction() as outer:
                with database.transaction(outer) as inner:
                    assert inner is outer
                    inner.execute(
                        "INSERT INTO refresh_alerts (id, kind, item_id, message, created_at) "
                        "VALUES ('a1', 'retries_exhausted', 'item-1', 'msg', '2025-01-01')"
                    )
                raise RuntimeError("boom")

        with database.connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM refresh_alerts").fetchone()[0]
        assert count == 0

    def test_memory_database_keeps_state(self):
        db = Database(":memory:")
        db.initialize()
        try:
            assert db.check_integrity() is True
        finally:
            db.close()
