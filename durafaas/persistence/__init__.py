"""Persistence layer for durafaas orchestration instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DurafaasConfig, load_config
from .inmemory import InMemoryInstanceStore
from .models import (
    ActivityCompleted,
    ActivityFailed,
    ActivityScheduled,
    EventRaised,
    HistoryEvent,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorCompleted,
    OrchestratorContinuedAsNew,
    OrchestratorFailed,
    OrchestratorStarted,
    OrchestratorTerminated,
)
from .repository import InstanceStore
from .sqlite import SQLiteInstanceStore


def get_store(
    database_url: Optional[str] = None, config: Optional[DurafaasConfig] = None
) -> InstanceStore:
    """Factory function to obtain an instance store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``DURAFAAS_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DURAFAAS_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryInstanceStore()

    if database_url.startswith("sqlite://"):
        return SQLiteInstanceStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresInstanceStore

        return PostgresInstanceStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ActivityCompleted",
    "ActivityFailed",
    "ActivityScheduled",
    "EventRaised",
    "HistoryEvent",
    "InMemoryInstanceStore",
    "InstanceStore",
    "OrchestrationInstance",
    "OrchestrationStatus",
    "OrchestratorCompleted",
    "OrchestratorContinuedAsNew",
    "OrchestratorFailed",
    "OrchestratorStarted",
    "OrchestratorTerminated",
    "SQLiteInstanceStore",
    "get_store",
]
