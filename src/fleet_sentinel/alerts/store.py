"""
Alert persistent storage.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..core.models import AlertSeverity, AlertType
from ..core.time_util import from_iso, to_iso
from .models import Alert, NotificationRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "alert_id, device_id, alert_type, severity, title, message, source, created_at, "
    "acknowledged_at, acknowledged_by, resolved_at, resolved_by, auto_resolve, "
    "auto_resolved, notifications_sent, escalation_tier, last_escalated_at"
)


class AlertStore:
    """
    Persistent storage for alerts using SQLite.

    Every mutation is a single-row statement or runs inside a
    ``BEGIN IMMEDIATE`` transaction, so the read-check-then-write sequences
    hold under concurrent sweeps. A partial unique index enforces at most one
    unresolved alert per (device_id, alert_type, title).
    """

    def __init__(self, db_path: str = "/var/lib/fleet-sentinel/fleet.db"):
        """
        Initialize alert store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    alert_id TEXT PRIMARY KEY,
                    device_id TEXT NOT NULL,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    acknowledged_at TEXT,
                    acknowledged_by TEXT,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    auto_resolve INTEGER DEFAULT 1,
                    auto_resolved INTEGER DEFAULT 0,
                    notifications_sent TEXT,
                    escalation_tier INTEGER DEFAULT 0,
                    last_escalated_at TEXT
                )
            """)

            # At most one unresolved alert per dedup key
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_key
                ON alerts(device_id, alert_type, title) WHERE resolved_at IS NULL
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_device ON alerts(device_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_resolved_at ON alerts(resolved_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_created_at ON alerts(created_at)")

        logger.info(f"Initialized alert database at {self.db_path}")

    def insert_if_absent(self, alert: Alert) -> Tuple[Alert, bool]:
        """
        Insert an alert unless an unresolved alert with the same dedup key exists.

        Args:
            alert: Fully populated alert to insert

        Returns:
            (stored alert, created) where created is False when an existing
            unresolved alert was returned instead
        """
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                existing = self._find_open(conn, alert.device_id, alert.alert_type, alert.title)
                if existing is not None:
                    conn.execute("COMMIT")
                    return existing, False

                conn.execute(
                    f"INSERT INTO alerts ({_COLUMNS}) VALUES "
                    "(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._alert_to_row(alert),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError:
                # Another writer inserted the same key between our check and insert
                conn.execute("ROLLBACK")
                existing = self._find_open(conn, alert.device_id, alert.alert_type, alert.title)
                if existing is None:
                    raise
                return existing, False
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug(f"Inserted alert {alert.alert_id} ({alert.device_id}/{alert.title})")
        return alert, True

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM alerts WHERE alert_id = ?", (alert_id,)
            ).fetchone()
        return self._row_to_alert(dict(row)) if row else None

    def list_open(
        self,
        device_id: Optional[str] = None,
        source: Optional[str] = None,
        since: Optional[datetime] = None,
        unacknowledged_only: bool = False,
    ) -> List[Alert]:
        """
        List unresolved alerts with optional filtering.

        Args:
            device_id: Only alerts for this device
            source: Only alerts raised by this source
            since: Only alerts created at or after this time
            unacknowledged_only: Skip acknowledged alerts

        Returns:
            Alerts ordered by creation time (oldest first)
        """
        query = f"SELECT {_COLUMNS} FROM alerts WHERE resolved_at IS NULL"
        params: list = []

        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if source is not None:
            query += " AND source = ?"
            params.append(source)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_iso(since))
        if unacknowledged_only:
            query += " AND acknowledged_at IS NULL"

        query += " ORDER BY created_at ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(dict(row)) for row in rows]

    def list_alerts(
        self,
        device_id: Optional[str] = None,
        include_resolved: bool = False,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """List alerts, newest first."""
        query = f"SELECT {_COLUMNS} FROM alerts WHERE 1 = 1"
        params: list = []

        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if not include_resolved:
            query += " AND resolved_at IS NULL"

        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(dict(row)) for row in rows]

    def mark_acknowledged(self, alert_id: str, by: str, at: datetime) -> bool:
        """Set acknowledgment on an unresolved, unacknowledged alert. Returns True if a row changed."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE alerts SET acknowledged_at = ?, acknowledged_by = ?
                WHERE alert_id = ? AND resolved_at IS NULL AND acknowledged_at IS NULL
                """,
                (to_iso(at), by, alert_id),
            )
            return cursor.rowcount == 1

    def mark_resolved(self, alert_id: str, by: str, at: datetime, auto_resolved: bool) -> bool:
        """
        Resolve an unresolved alert and discard its escalation state.

        Returns:
            True if the alert was open and is now resolved
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE alerts
                SET resolved_at = ?, resolved_by = ?, auto_resolved = ?,
                    escalation_tier = 0, last_escalated_at = NULL
                WHERE alert_id = ? AND resolved_at IS NULL
                """,
                (to_iso(at), by, int(auto_resolved), alert_id),
            )
            return cursor.rowcount == 1

    def advance_tier(self, alert_id: str, expected_tier: int, new_tier: int, at: datetime) -> bool:
        """
        Compare-and-set the escalation tier.

        Only succeeds while the alert is still open, unacknowledged and at
        ``expected_tier``, so two overlapping sweeps cannot both advance it.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE alerts SET escalation_tier = ?, last_escalated_at = ?
                WHERE alert_id = ? AND escalation_tier = ?
                  AND resolved_at IS NULL AND acknowledged_at IS NULL
                """,
                (new_tier, to_iso(at), alert_id, expected_tier),
            )
            return cursor.rowcount == 1

    def append_notification(self, alert_id: str, record: NotificationRecord) -> None:
        """Append to the alert's notifications-sent record."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT notifications_sent FROM alerts WHERE alert_id = ?", (alert_id,)
                ).fetchone()
                if row is None:
                    conn.execute("ROLLBACK")
                    logger.warning(f"Alert {alert_id} vanished before notification record was saved")
                    return
                sent = json.loads(row["notifications_sent"]) if row["notifications_sent"] else []
                sent.append(json.loads(record.model_dump_json()))
                conn.execute(
                    "UPDATE alerts SET notifications_sent = ? WHERE alert_id = ?",
                    (json.dumps(sent), alert_id),
                )
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def delete_resolved_before(self, cutoff: datetime) -> int:
        """
        Delete resolved alerts whose resolution time is at or before ``cutoff``.

        Returns:
            Number of deleted alerts
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM alerts WHERE resolved_at IS NOT NULL AND resolved_at <= ?",
                (to_iso(cutoff),),
            )
            return cursor.rowcount

    def get_stats(self) -> Dict[str, int]:
        """Counts of unresolved alerts, total and per severity."""
        stats = {"open": 0, "acknowledged": 0}
        stats.update({severity.value: 0 for severity in AlertSeverity})

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT severity, COUNT(*) AS total,
                       SUM(CASE WHEN acknowledged_at IS NOT NULL THEN 1 ELSE 0 END) AS acked
                FROM alerts WHERE resolved_at IS NULL GROUP BY severity
                """
            ).fetchall()

        for row in rows:
            stats[row["severity"]] = row["total"]
            stats["open"] += row["total"]
            stats["acknowledged"] += row["acked"] or 0
        return stats

    def _find_open(
        self, conn: sqlite3.Connection, device_id: str, alert_type: AlertType, title: str
    ) -> Optional[Alert]:
        row = conn.execute(
            f"""
            SELECT {_COLUMNS} FROM alerts
            WHERE device_id = ? AND alert_type = ? AND title = ? AND resolved_at IS NULL
            """,
            (device_id, alert_type.value, title),
        ).fetchone()
        return self._row_to_alert(dict(row)) if row else None

    def _alert_to_row(self, alert: Alert) -> tuple:
        return (
            alert.alert_id,
            alert.device_id,
            alert.alert_type.value,
            alert.severity.value,
            alert.title,
            alert.message,
            alert.source,
            to_iso(alert.created_at),
            to_iso(alert.acknowledged_at),
            alert.acknowledged_by,
            to_iso(alert.resolved_at),
            alert.resolved_by,
            int(alert.auto_resolve),
            int(alert.auto_resolved),
            json.dumps([json.loads(r.model_dump_json()) for r in alert.notifications_sent]),
            alert.escalation_tier,
            to_iso(alert.last_escalated_at),
        )

    def _row_to_alert(self, row: Dict) -> Alert:
        """Convert database row to Alert model."""
        return Alert(
            alert_id=row["alert_id"],
            device_id=row["device_id"],
            alert_type=AlertType(row["alert_type"]),
            severity=AlertSeverity(row["severity"]),
            title=row["title"],
            message=row["message"] or "",
            source=row["source"],
            created_at=from_iso(row["created_at"]),
            acknowledged_at=from_iso(row["acknowledged_at"]),
            acknowledged_by=row["acknowledged_by"],
            resolved_at=from_iso(row["resolved_at"]),
            resolved_by=row["resolved_by"],
            auto_resolve=bool(row["auto_resolve"]),
            auto_resolved=bool(row["auto_resolved"]),
            notifications_sent=[
                NotificationRecord(**r) for r in json.loads(row["notifications_sent"])
            ] if row["notifications_sent"] else [],
            escalation_tier=row["escalation_tier"] or 0,
            last_escalated_at=from_iso(row["last_escalated_at"]),
        )
