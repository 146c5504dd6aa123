"""
Workflow execution persistent storage.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..core.time_util import from_iso, to_iso
from .models import StepResult, WorkflowExecution, WorkflowStatus

logger = logging.getLogger(__name__)

# Added after the first schema; older databases get them on open
LEASE_COLUMNS = ("owner_id", "heartbeat_at", "stop_requested_by")


class ExecutionStore:
    """
    Persistent storage for workflow executions using SQLite.

    One row per execution; step results and parameters are stored as JSON.
    A Running row is leased by the orchestrator that runs it: only that
    owner may write it, and it keeps ``heartbeat_at`` fresh while it runs.
    Several processes may share the same database file.
    """

    def __init__(self, db_path: str = "/var/lib/fleet-sentinel/fleet.db"):
        """
        Initialize execution store.

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
                CREATE TABLE IF NOT EXISTS workflow_executions (
                    execution_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    steps TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    failed_step TEXT,
                    error TEXT,
                    params TEXT,
                    triggered_by TEXT,
                    owner_id TEXT,
                    heartbeat_at TEXT,
                    stop_requested_by TEXT
                )
            """)

            existing = {row["name"] for row in conn.execute("PRAGMA table_info(workflow_executions)")}
            for column in LEASE_COLUMNS:
                if column not in existing:
                    conn.execute(f"ALTER TABLE workflow_executions ADD COLUMN {column} TEXT")

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_started_at ON workflow_executions(started_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_device ON workflow_executions(device_id)"
            )

        logger.info(f"Initialized workflow execution database at {self.db_path}")

    def save(self, execution: WorkflowExecution) -> bool:
        """
        Insert or update an execution record.

        An existing record is only updated while it is Running and owned by
        ``execution.owner_id``; a terminal record never changes.

        Args:
            execution: Execution to save

        Returns:
            True if the row was written, False if another writer owns it or
            it is already terminal
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO workflow_executions (
                    execution_id, workflow_name, device_id, status, steps, started_at,
                    completed_at, failed_step, error, params, triggered_by,
                    owner_id, heartbeat_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id) DO UPDATE SET
                    status = excluded.status,
                    steps = excluded.steps,
                    completed_at = excluded.completed_at,
                    failed_step = excluded.failed_step,
                    error = excluded.error,
                    heartbeat_at = excluded.heartbeat_at
                WHERE workflow_executions.status = 'Running'
                  AND workflow_executions.owner_id IS excluded.owner_id
                """,
                (
                    execution.execution_id,
                    execution.workflow_name,
                    execution.device_id,
                    execution.status.value,
                    json.dumps([json.loads(s.model_dump_json()) for s in execution.steps]),
                    to_iso(execution.started_at),
                    to_iso(execution.completed_at),
                    execution.failed_step,
                    execution.error,
                    json.dumps(execution.params, default=str),
                    execution.triggered_by,
                    execution.owner_id,
                    to_iso(execution.heartbeat_at),
                ),
            )
            written = cursor.rowcount > 0

        if written:
            logger.debug(f"Saved execution {execution.execution_id} ({execution.status.value})")
        else:
            logger.warning(
                f"Execution {execution.execution_id} was not saved: it is terminal or owned by another run"
            )
        return written

    def heartbeat(self, execution_id: str, owner_id: str, at: datetime) -> bool:
        """Renew the owner's lease. False once the row is terminal or owned elsewhere."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_executions SET heartbeat_at = ?
                WHERE execution_id = ? AND owner_id = ? AND status = 'Running'
                """,
                (to_iso(at), execution_id, owner_id),
            )
            return cursor.rowcount > 0

    def request_stop(self, execution_id: str, by: str) -> bool:
        """
        Record a stop request on a Running execution.

        The first request wins; later ones change nothing.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_executions SET stop_requested_by = ?
                WHERE execution_id = ? AND status = 'Running' AND stop_requested_by IS NULL
                """,
                (by, execution_id),
            )
            return cursor.rowcount > 0

    def stop_requested_by(self, execution_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT stop_requested_by FROM workflow_executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
        return row["stop_requested_by"] if row else None

    def fail_if_abandoned(self, execution_id: str, stale_before: datetime, at: datetime, error: str) -> bool:
        """
        Fail a Running execution whose lease ran out.

        The lease check and the status change happen in one statement, so a
        run that is still heartbeating is never taken over.

        Returns:
            True if the execution was marked Failed
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_executions SET status = ?, completed_at = ?, error = ?
                WHERE execution_id = ? AND status = 'Running'
                  AND (heartbeat_at IS NULL OR heartbeat_at < ?)
                """,
                (WorkflowStatus.FAILED.value, to_iso(at), error, execution_id, to_iso(stale_before)),
            )
            return cursor.rowcount > 0

    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_execution(dict(row)) if row else None

    def history(
        self,
        limit: int = 20,
        device_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        """
        Most recent executions, newest first.

        Args:
            limit: Maximum number of executions
            device_id: Only executions against this device
            workflow_name: Only executions of this workflow
        """
        query = "SELECT * FROM workflow_executions WHERE 1 = 1"
        params: list = []

        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if workflow_name is not None:
            query += " AND workflow_name = ?"
            params.append(workflow_name)

        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_execution(dict(row)) for row in rows]

    def list_running(self) -> List[WorkflowExecution]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_executions WHERE status = ? ORDER BY started_at",
                (WorkflowStatus.RUNNING.value,),
            ).fetchall()
        return [self._row_to_execution(dict(row)) for row in rows]

    def _row_to_execution(self, row: Dict) -> WorkflowExecution:
        """Convert database row to WorkflowExecution model."""
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            device_id=row["device_id"],
            status=WorkflowStatus(row["status"]),
            steps=[StepResult(**s) for s in json.loads(row["steps"] or "[]")],
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            failed_step=row["failed_step"],
            error=row["error"],
            params=json.loads(row["params"]) if row["params"] else {},
            triggered_by=row["triggered_by"] or "manual",
            owner_id=row["owner_id"],
            heartbeat_at=from_iso(row["heartbeat_at"]),
            stop_requested_by=row["stop_requested_by"],
        )
