"""
Device inventory persistent storage.

The inventory itself is populated by the external collector; the control
plane only writes each device's live status, last-seen time and score.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..core.models import Device, DeviceStatus
from ..core.time_util import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class InventoryStore:
    """
    Persistent storage for managed devices using SQLite.
    """

    def __init__(self, db_path: str = "/var/lib/fleet-sentinel/fleet.db"):
        """
        Initialize inventory store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS devices (
                    device_id TEXT PRIMARY KEY,
                    hostname TEXT,
                    status TEXT NOT NULL DEFAULT 'Unknown',
                    last_seen TEXT,
                    health_score INTEGER,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status)")

        logger.info(f"Initialized inventory database at {self.db_path}")

    def get_device(self, device_id: str) -> Optional[Device]:
        """
        Get device by id.

        Args:
            device_id: Device identifier

        Returns:
            Device or None if not found
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE device_id = ?", (device_id,)
            ).fetchone()

        if not row:
            return None
        return self._row_to_device(dict(row))

    def upsert_device(self, device: Device) -> None:
        """
        Insert or update device.

        Args:
            device: Device to save
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO devices (
                    device_id, hostname, status, last_seen, health_score, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    device.device_id,
                    device.hostname,
                    device.status.value,
                    to_iso(device.last_seen),
                    device.health_score,
                    to_iso(device.updated_at),
                ),
            )

        logger.debug(f"Saved device: {device.device_id}")

    def update_status(
        self,
        device_id: str,
        status: DeviceStatus,
        health_score: Optional[int] = None,
        last_seen: Optional[datetime] = None,
    ) -> None:
        """
        Write a device's live status after an assessment.

        ``last_seen`` and ``health_score`` are only overwritten when given,
        so an unreachable device keeps its last known values.
        """
        now = to_iso(utcnow())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (device_id, status, last_seen, health_score, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    status = excluded.status,
                    last_seen = COALESCE(excluded.last_seen, devices.last_seen),
                    health_score = COALESCE(excluded.health_score, devices.health_score),
                    updated_at = excluded.updated_at
                """,
                (device_id, status.value, to_iso(last_seen), health_score, now),
            )

        logger.debug(f"Device {device_id} status -> {status.value}")

    def list_devices(
        self, status: Optional[DeviceStatus] = None, limit: Optional[int] = None
    ) -> List[Device]:
        """
        List devices with optional filtering.

        Args:
            status: Only devices with this status
            limit: Maximum number of devices to return

        Returns:
            List of devices ordered by id
        """
        query = "SELECT * FROM devices"
        params: list = []

        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)

        query += " ORDER BY device_id"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_device(dict(row)) for row in rows]

    def list_device_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT device_id FROM devices ORDER BY device_id").fetchall()
        return [row["device_id"] for row in rows]

    def fleet_summary(self) -> Dict[str, int]:
        """
        Get fleet-wide device counts.

        Returns:
            ``total``, ``online`` and one count per device status
        """
        summary = {"total": 0, "online": 0}
        summary.update({status.value: 0 for status in DeviceStatus})

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM devices GROUP BY status"
            ).fetchall()

        for row in rows:
            summary[row["status"]] = row["count"]
            summary["total"] += row["count"]
        summary["online"] = summary[DeviceStatus.ONLINE.value]
        return summary

    def _row_to_device(self, row: Dict) -> Device:
        """Convert database row to Device model."""
        return Device(
            device_id=row["device_id"],
            hostname=row["hostname"],
            status=DeviceStatus(row["status"]),
            last_seen=from_iso(row["last_seen"]),
            health_score=row["health_score"],
            updated_at=from_iso(row["updated_at"]),
        )
