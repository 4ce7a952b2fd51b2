"""SQLite implementation of the instance store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from ..contracts import ErrorDetails, utcnow
from ..errors import InstanceConflict, InstanceNotFound
from .models import (
    ACTIVE_STATUSES,
    HistoryEvent,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorStarted,
    event_from_json,
    event_to_json,
)
from .repository import InstanceStore


class SQLiteInstanceStore(InstanceStore):
    """Persist orchestration state using SQLite.

    The connection runs in autocommit mode and every mutation opens an
    explicit ``BEGIN IMMEDIATE`` transaction, so a check-then-create or a
    multi-event append is atomic even across processes sharing the file.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS instances (
                    instance_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    last_updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instance_id TEXT NOT NULL,
                    event TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_instance ON history (instance_id, id)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                cur.execute("COMMIT")

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _create(
        self, instance_id: str, name: str, started: OrchestratorStarted
    ) -> OrchestrationInstance:
        now = utcnow()
        with self._transaction() as cur:
            cur.execute(
                "SELECT status FROM instances WHERE instance_id = ?", (instance_id,)
            )
            row = cur.fetchone()
            if row is not None:
                status = OrchestrationStatus(row["status"])
                if status in ACTIVE_STATUSES:
                    raise InstanceConflict(instance_id, status.value)
                cur.execute("DELETE FROM history WHERE instance_id = ?", (instance_id,))
                cur.execute("DELETE FROM instances WHERE instance_id = ?", (instance_id,))
            cur.execute(
                """
                INSERT INTO instances
                    (instance_id, name, status, input, output, error, created_at, last_updated_at)
                VALUES (?, ?, ?, ?, NULL, NULL, ?, ?)
                """,
                (
                    instance_id,
                    name,
                    OrchestrationStatus.PENDING.value,
                    json.dumps(started.input),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            cur.execute(
                "INSERT INTO history (instance_id, event) VALUES (?, ?)",
                (instance_id, event_to_json(started)),
            )
        return OrchestrationInstance(
            instance_id=instance_id,
            name=name,
            input=started.input,
            history=[started],
            created_at=now,
            last_updated_at=now,
        )

    def _append(
        self,
        instance_id: str,
        events: Sequence[HistoryEvent],
        status: Optional[OrchestrationStatus],
        output: Any,
        error: Optional[ErrorDetails],
    ) -> None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT instance_id FROM instances WHERE instance_id = ?",
                (instance_id,),
            )
            if cur.fetchone() is None:
                raise InstanceNotFound(instance_id)
            cur.executemany(
                "INSERT INTO history (instance_id, event) VALUES (?, ?)",
                [(instance_id, event_to_json(event)) for event in events],
            )
            assignments = ["last_updated_at = ?"]
            params: list[Any] = [utcnow().isoformat()]
            if status is not None:
                assignments.append("status = ?")
                params.append(status.value)
            if output is not None:
                assignments.append("output = ?")
                params.append(json.dumps(output))
            if error is not None:
                assignments.append("error = ?")
                params.append(error.model_dump_json())
            restarted = [e for e in events if isinstance(e, OrchestratorStarted)]
            if restarted:
                assignments.append("input = ?")
                params.append(json.dumps(restarted[-1].input))
            cur.execute(
                f"UPDATE instances SET {', '.join(assignments)} WHERE instance_id = ?",
                (*params, instance_id),
            )

    def _load(self, rows: list[sqlite3.Row]) -> list[OrchestrationInstance]:
        instances = []
        for row in rows:
            history = [
                event_from_json(r["event"])
                for r in self._fetchall(
                    "SELECT event FROM history WHERE instance_id = ? ORDER BY id",
                    row["instance_id"],
                )
            ]
            instances.append(
                OrchestrationInstance(
                    instance_id=row["instance_id"],
                    name=row["name"],
                    status=OrchestrationStatus(row["status"]),
                    input=json.loads(row["input"]) if row["input"] else None,
                    output=json.loads(row["output"]) if row["output"] else None,
                    error=(
                        ErrorDetails.model_validate_json(row["error"])
                        if row["error"]
                        else None
                    ),
                    history=history,
                    created_at=datetime.fromisoformat(row["created_at"]),
                    last_updated_at=datetime.fromisoformat(row["last_updated_at"]),
                )
            )
        return instances

    def _get(self, instance_id: str) -> OrchestrationInstance | None:
        with self._lock:
            rows = self._fetchall(
                "SELECT * FROM instances WHERE instance_id = ?", instance_id
            )
            loaded = self._load(rows)
        return loaded[0] if loaded else None

    def _list(self, status: Optional[OrchestrationStatus]) -> list[OrchestrationInstance]:
        with self._lock:
            if status is None:
                rows = self._fetchall("SELECT * FROM instances ORDER BY created_at")
            else:
                rows = self._fetchall(
                    "SELECT * FROM instances WHERE status = ? ORDER BY created_at",
                    status.value,
                )
            return self._load(rows)

    # ------------------------------------------------------------------
    # Store API
    async def create_instance(
        self, instance_id: str, name: str, started: OrchestratorStarted
    ) -> OrchestrationInstance:
        return await asyncio.to_thread(self._create, instance_id, name, started)

    async def append_events(
        self,
        instance_id: str,
        events: Sequence[HistoryEvent],
        status: Optional[OrchestrationStatus] = None,
        output: Any = None,
        error: Optional[ErrorDetails] = None,
    ) -> None:
        await asyncio.to_thread(self._append, instance_id, events, status, output, error)

    async def get_instance(self, instance_id: str) -> OrchestrationInstance | None:
        return await asyncio.to_thread(self._get, instance_id)

    async def list_instances(
        self, status: Optional[OrchestrationStatus] = None
    ) -> list[OrchestrationInstance]:
        return await asyncio.to_thread(self._list, status)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
