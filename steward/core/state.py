"""SQLite state management with event sourcing.

The events table is the append-only audit log. The workflow_runs table holds
the current continuation of each run (state tag + accumulated step outputs),
which is all a process needs to resume a suspended run.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from steward.core.models import RunStatus, WorkflowRun

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events in the event log."""

    # Workflow events
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_SUSPENDED = "workflow_suspended"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"

    # Step events
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"

    # Human intervention
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _json_or(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    run_id: str
    event_type: EventType
    step_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite database holding workflow runs and their event log."""

    SCHEMA = """
    -- Event log (immutable)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        step_id TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Workflow run continuations
    CREATE TABLE IF NOT EXISTS workflow_runs (
        run_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step TEXT,
        input JSON,
        step_outputs JSON,
        suspended_input JSON,
        suspend_payload JSON,
        result JSON,
        error TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id);
    CREATE INDEX IF NOT EXISTS idx_runs_status ON workflow_runs(status);
    """

    def __init__(self, db_path: str | Path = ".steward/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL allows readers and writers to operate simultaneously without blocking
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Event Log ---

    def append_event(self, event: Event) -> int:
        """Append an event to the log."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (run_id, event_type, step_id, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.run_id,
                    event.event_type.value,
                    event.step_id,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_events(
        self, run_id: str, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Get events for a run, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE run_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [run_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE run_id = ? ORDER BY id",
                    (run_id,),
                ).fetchall()

            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert database row to Event."""
        return Event(
            id=row["id"],
            run_id=row["run_id"],
            event_type=EventType(row["event_type"]),
            step_id=row["step_id"],
            payload=_json_or(row["payload"], {}),
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    # --- Workflow Runs ---

    def save_run(self, run: WorkflowRun) -> None:
        """Insert or replace the continuation for a run."""
        run.updated_at = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_runs (
                    run_id, workflow_id, status, current_step, input, step_outputs,
                    suspended_input, suspend_payload, result, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    current_step = excluded.current_step,
                    input = excluded.input,
                    step_outputs = excluded.step_outputs,
                    suspended_input = excluded.suspended_input,
                    suspend_payload = excluded.suspend_payload,
                    result = excluded.result,
                    error = excluded.error,
                    updated_at = excluded.updated_at
                """,
                (
                    run.run_id,
                    run.workflow_id,
                    run.status.value,
                    run.current_step,
                    _safe_json_dumps(run.input),
                    _safe_json_dumps(run.step_outputs),
                    _safe_json_dumps(run.suspended_input)
                    if run.suspended_input is not None else None,
                    _safe_json_dumps(run.suspend_payload)
                    if run.suspend_payload is not None else None,
                    _safe_json_dumps(run.result) if run.result is not None else None,
                    run.error,
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )

    def get_run(self, run_id: str) -> WorkflowRun | None:
        """Get a run by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_run(row)

    def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        """List runs, newest first, optionally filtered by status."""
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM workflow_runs WHERE status = ? ORDER BY created_at DESC",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM workflow_runs ORDER BY created_at DESC"
                ).fetchall()
            return [self._row_to_run(row) for row in rows]

    def claim_suspended_run(self, run_id: str) -> bool:
        """Atomically move a run from suspended to running.

        Returns False if the run is not suspended (already resumed by another
        process, finished, or unknown). Guards against double resumption.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_runs SET status = ?, updated_at = ?
                WHERE run_id = ? AND status = ?
                """,
                (
                    RunStatus.RUNNING.value,
                    _utc_now().isoformat(),
                    run_id,
                    RunStatus.SUSPENDED.value,
                ),
            )
            return cursor.rowcount == 1

    def release_claim(self, run_id: str) -> bool:
        """Return a claimed (running) run to suspended without touching its state.

        Runs that already reached suspended, success or failed are left alone.
        Returns True if the run was released.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_runs SET status = ?, updated_at = ?
                WHERE run_id = ? AND status = ?
                """,
                (
                    RunStatus.SUSPENDED.value,
                    _utc_now().isoformat(),
                    run_id,
                    RunStatus.RUNNING.value,
                ),
            )
            return cursor.rowcount == 1

    def _row_to_run(self, row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            status=RunStatus(row["status"]),
            current_step=row["current_step"],
            input=_json_or(row["input"], {}),
            step_outputs=_json_or(row["step_outputs"], {}),
            suspended_input=_json_or(row["suspended_input"], None),
            suspend_payload=_json_or(row["suspend_payload"], None),
            result=_json_or(row["result"], None),
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
