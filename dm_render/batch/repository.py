"""
Batch persistence - where batch progress and per-recipient outcomes live.

Two implementations of the same protocol:
    InMemoryBatchStore      process-local, used by default and in tests
    SQLiteBatchRepository   durable, one SQLite file

Calls are synchronous; the orchestrator runs them in a worker thread.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, runtime_checkable

from ..config.settings import settings
from ..models import RenderResult
from .models import BatchState

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 10.0


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


@runtime_checkable
class BatchPersistence(Protocol):
    """Storage contract for batch bookkeeping."""

    def create_batch_job(
        self,
        template_id: str,
        recipient_count: int,
        format_name: str,
        mode: str,
    ) -> str: ...

    def update_batch_progress(
        self,
        batch_id: str,
        completed: int,
        failed: int,
        state: BatchState,
        error_message: Optional[str] = None,
    ) -> None: ...

    def record_recipient_result(self, batch_id: str, index: int, outcome: RenderResult) -> None: ...

    def get_batch_job(self, batch_id: str) -> Optional[dict]: ...

    def list_recipient_results(self, batch_id: str) -> List[dict]: ...


class InMemoryBatchStore:
    """Process-local batch store"""

    def __init__(self):
        self._jobs: Dict[str, dict] = {}
        self._results: Dict[str, Dict[int, dict]] = {}
        self._lock = threading.Lock()

    def create_batch_job(self, template_id, recipient_count, format_name, mode) -> str:
        batch_id = new_batch_id()
        now = datetime.now().isoformat()
        with self._lock:
            self._jobs[batch_id] = {
                "id": batch_id,
                "template_id": template_id,
                "format_name": format_name,
                "mode": str(getattr(mode, "value", mode)),
                "total_recipients": recipient_count,
                "completed_count": 0,
                "failed_count": 0,
                "state": BatchState.PENDING.value,
                "error_message": None,
                "created_at": now,
                "updated_at": now,
            }
            self._results[batch_id] = {}
        return batch_id

    def update_batch_progress(self, batch_id, completed, failed, state, error_message=None) -> None:
        with self._lock:
            job = self._jobs.get(batch_id)
            if job is None:
                logger.warning(f"Progress update for unknown batch {batch_id}")
                return
            job["completed_count"] = completed
            job["failed_count"] = failed
            job["state"] = BatchState(state).value
            if error_message:
                job["error_message"] = error_message
            job["updated_at"] = datetime.now().isoformat()

    def record_recipient_result(self, batch_id, index, outcome: RenderResult) -> None:
        with self._lock:
            if batch_id not in self._results:
                logger.warning(f"Result for unknown batch {batch_id}")
                return
            self._results[batch_id][index] = outcome.to_dict()

    def get_batch_job(self, batch_id) -> Optional[dict]:
        with self._lock:
            job = self._jobs.get(batch_id)
            return dict(job) if job else None

    def list_recipient_results(self, batch_id) -> List[dict]:
        with self._lock:
            results = self._results.get(batch_id, {})
            return [results[i] for i in sorted(results)]

    def delete_batch(self, batch_id) -> bool:
        with self._lock:
            self._results.pop(batch_id, None)
            return self._jobs.pop(batch_id, None) is not None


class SQLiteBatchRepository:
    """
    SQLite-backed batch store (``<database_dir>/batches.db``).

    Each call opens its own connection, so the repository is safe to use
    from the orchestrator's worker threads. The schema is created on
    construction.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.database_dir / "batches.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS batch_jobs (
                    id TEXT PRIMARY KEY,
                    template_id TEXT NOT NULL,
                    format_name TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    total_recipients INTEGER NOT NULL,
                    completed_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL DEFAULT 'pending',
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS recipient_results (
                    batch_id TEXT NOT NULL REFERENCES batch_jobs(id) ON DELETE CASCADE,
                    recipient_index INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    error_kind TEXT,
                    data JSON NOT NULL,
                    PRIMARY KEY (batch_id, recipient_index)
                );

                CREATE INDEX IF NOT EXISTS idx_batch_state ON batch_jobs(state);
            """)

    def create_batch_job(self, template_id, recipient_count, format_name, mode) -> str:
        batch_id = new_batch_id()
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO batch_jobs (id, template_id, format_name, mode,
                                        total_recipients, state, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch_id,
                    template_id,
                    format_name,
                    str(getattr(mode, "value", mode)),
                    recipient_count,
                    BatchState.PENDING.value,
                    now,
                    now,
                ),
            )
        logger.debug(f"Created batch {batch_id} ({recipient_count} recipients)")
        return batch_id

    def update_batch_progress(self, batch_id, completed, failed, state, error_message=None) -> None:
        state = BatchState(state)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_jobs
                SET completed_count = ?, failed_count = ?, state = ?,
                    error_message = COALESCE(?, error_message), updated_at = ?
                WHERE id = ?
                """,
                (completed, failed, state.value, error_message, datetime.now().isoformat(), batch_id),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Progress update for unknown batch {batch_id}")

    def record_recipient_result(self, batch_id, index, outcome: RenderResult) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO recipient_results (batch_id, recipient_index, status, error_kind, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(batch_id, recipient_index) DO UPDATE SET
                    status = excluded.status,
                    error_kind = excluded.error_kind,
                    data = excluded.data
                """,
                (
                    batch_id,
                    index,
                    outcome.status.value,
                    outcome.error_kind.value if outcome.error_kind else None,
                    json.dumps(outcome.to_dict()),
                ),
            )

    def get_batch_job(self, batch_id) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM batch_jobs WHERE id = ?", (batch_id,)).fetchone()
        return dict(row) if row else None

    def list_recipient_results(self, batch_id) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM recipient_results WHERE batch_id = ? ORDER BY recipient_index",
                (batch_id,),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def list_batches(self, state: Optional[BatchState] = None, limit: int = 50) -> List[dict]:
        """Most recently updated batches, optionally filtered by state."""
        query = "SELECT * FROM batch_jobs"
        params: list = []
        if state is not None:
            query += " WHERE state = ?"
            params.append(BatchState(state).value)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def delete_batch(self, batch_id) -> bool:
        """Remove a batch and its recipient results."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM batch_jobs WHERE id = ?", (batch_id,))
        return cursor.rowcount > 0
