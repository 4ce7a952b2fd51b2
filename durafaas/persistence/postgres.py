"""PostgreSQL implementation of the instance store."""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import asyncpg

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


class PostgresInstanceStore(InstanceStore):
    """Persist orchestration state using PostgreSQL.

    Mutations lock the instance row with ``SELECT ... FOR UPDATE`` inside a
    transaction, which gives single-writer semantics per instance ID.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def _connect(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn)
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                last_updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                id BIGSERIAL PRIMARY KEY,
                instance_id TEXT NOT NULL,
                event JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_instance ON history (instance_id, id)"
        )

    # ------------------------------------------------------------------
    async def create_instance(
        self, instance_id: str, name: str, started: OrchestratorStarted
    ) -> OrchestrationInstance:
        pool = await self._connect()
        now = utcnow()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serializes concurrent creators of a never-seen ID.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", instance_id
                )
                row = await conn.fetchrow(
                    "SELECT status FROM instances WHERE instance_id = $1 FOR UPDATE",
                    instance_id,
                )
                if row is not None:
                    status = OrchestrationStatus(row["status"])
                    if status in ACTIVE_STATUSES:
                        raise InstanceConflict(instance_id, status.value)
                    await conn.execute(
                        "DELETE FROM history WHERE instance_id = $1", instance_id
                    )
                    await conn.execute(
                        "DELETE FROM instances WHERE instance_id = $1", instance_id
                    )
                await conn.execute(
                    """
                    INSERT INTO instances
                        (instance_id, name, status, input, created_at, last_updated_at)
                    VALUES ($1, $2, $3, $4, $5, $5)
                    """,
                    instance_id,
                    name,
                    OrchestrationStatus.PENDING.value,
                    json.dumps(started.input),
                    now,
                )
                await conn.execute(
                    "INSERT INTO history (instance_id, event) VALUES ($1, $2)",
                    instance_id,
                    event_to_json(started),
                )
        return OrchestrationInstance(
            instance_id=instance_id,
            name=name,
            input=started.input,
            history=[started],
            created_at=now,
            last_updated_at=now,
        )

    async def append_events(
        self,
        instance_id: str,
        events: Sequence[HistoryEvent],
        status: Optional[OrchestrationStatus] = None,
        output: Any = None,
        error: Optional[ErrorDetails] = None,
    ) -> None:
        pool = await self._connect()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT instance_id FROM instances WHERE instance_id = $1 FOR UPDATE",
                    instance_id,
                )
                if row is None:
                    raise InstanceNotFound(instance_id)
                await conn.executemany(
                    "INSERT INTO history (instance_id, event) VALUES ($1, $2)",
                    [(instance_id, event_to_json(event)) for event in events],
                )
                restarted = [e for e in events if isinstance(e, OrchestratorStarted)]
                await conn.execute(
                    """
                    UPDATE instances SET
                        last_updated_at = $2,
                        status = COALESCE($3, status),
                        output = COALESCE($4::jsonb, output),
                        error = COALESCE($5::jsonb, error),
                        input = CASE WHEN $6 THEN $7::jsonb ELSE input END
                    WHERE instance_id = $1
                    """,
                    instance_id,
                    utcnow(),
                    status.value if status is not None else None,
                    json.dumps(output) if output is not None else None,
                    error.model_dump_json() if error is not None else None,
                    bool(restarted),
                    json.dumps(restarted[-1].input) if restarted else None,
                )

    async def _load(
        self, conn: asyncpg.Connection, rows: list[asyncpg.Record]
    ) -> list[OrchestrationInstance]:
        instances = []
        for row in rows:
            history_rows = await conn.fetch(
                "SELECT event::text AS event FROM history WHERE instance_id = $1 ORDER BY id",
                row["instance_id"],
            )
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
                    history=[event_from_json(r["event"]) for r in history_rows],
                    created_at=row["created_at"],
                    last_updated_at=row["last_updated_at"],
                )
            )
        return instances

    async def get_instance(self, instance_id: str) -> OrchestrationInstance | None:
        pool = await self._connect()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                rows = await conn.fetch(
                    "SELECT * FROM instances WHERE instance_id = $1", instance_id
                )
                loaded = await self._load(conn, rows)
        return loaded[0] if loaded else None

    async def list_instances(
        self, status: Optional[OrchestrationStatus] = None
    ) -> list[OrchestrationInstance]:
        pool = await self._connect()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                if status is None:
                    rows = await conn.fetch("SELECT * FROM instances ORDER BY created_at")
                else:
                    rows = await conn.fetch(
                        "SELECT * FROM instances WHERE status = $1 ORDER BY created_at",
                        status.value,
                    )
                return await self._load(conn, rows)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
