"""Persisted operational alerts"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from freshwatch.models.analytics import Alert, AlertKind
from freshwatch.services.db_manager import Database, dump_json, load_json
from freshwatch.services.telemetry import TelemetryService
from freshwatch.utils.timestamps import ensure_utc, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)


class AlertService:
    """Record alerts, log them and forward them to OpenTelemetry"""

    def __init__(self, database: Database, telemetry: TelemetryService | None = None):
        self.database = database
        self.telemetry = telemetry

    def raise_alert(
        self,
        kind: AlertKind,
        item_id: str,
        message: str,
        *,
        queue_id: str | None = None,
        details: dict[str, Any] | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Alert:
        """
        Persist a new alert

        The alert is logged and forwarded to telemetry once stored. When it is
        written inside a caller's transaction, the caller publishes it after
        committing.

        Args:
            kind: Alert category
            item_id: Item the alert concerns
            message: Human-readable description
            queue_id: Queue entry involved, if any
            details: Additional structured context
            now: Current time
            conn: Connection of an enclosing transaction

        Returns:
            Alert: The stored alert
        """
        alert = Alert(
            id=str(uuid.uuid4()),
            kind=kind,
            item_id=item_id,
            queue_id=queue_id,
            message=message,
            details=details or {},
            created_at=ensure_utc(now or utcnow()),
        )

        with self.database.transaction(conn) as tx:
            tx.execute(
                """
                INSERT INTO refresh_alerts (id, kind, item_id, queue_id, message, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.kind.value,
                    alert.item_id,
                    alert.queue_id,
                    alert.message,
                    dump_json(alert.details),
                    to_db_time(alert.created_at),
                ),
            )

        if conn is None:
            self.publish(alert)
        return alert

    def publish(self, alert: Alert) -> None:
        """Log a stored alert and forward it to telemetry"""
        logger.warning(f"ALERT [{alert.kind.value}] {alert.item_id}: {alert.message}")
        if self.telemetry:
            self.telemetry.emit_alert(alert)

    def list_alerts(
        self,
        item_id: str | None = None,
        kind: AlertKind | None = None,
        limit: int = 100,
    ) -> list[Alert]:
        """List alerts, newest first"""
        clauses = []
        params: list[Any] = []
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(AlertKind(kind).value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self.database.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM refresh_alerts {where} ORDER BY created_at DESC LIMIT ?",
                params,
            ).fetchall()

        return [
            Alert(
                id=row["id"],
                kind=row["kind"],
                item_id=row["item_id"],
                queue_id=row["queue_id"],
                message=row["message"],
                details=load_json(row["details"], {}),
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
