"""Store abstraction for orchestration instance persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from ..contracts import ErrorDetails
from .models import (
    HistoryEvent,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorStarted,
)


class InstanceStore(Protocol):
    """Protocol for orchestration state persistence backends.

    Every mutation of a single instance is atomic. ``create_instance`` is the
    check-then-create gate behind single-instance semantics: it must refuse
    to overwrite an active instance even when called concurrently.
    """

    async def create_instance(
        self, instance_id: str, name: str, started: OrchestratorStarted
    ) -> OrchestrationInstance:
        """Create (or replace a terminal) instance whose history starts with ``started``.

        Raises:
            InstanceConflict: If an active instance already uses ``instance_id``.
        """

    async def append_events(
        self,
        instance_id: str,
        events: Sequence[HistoryEvent],
        status: Optional[OrchestrationStatus] = None,
        output: Any = None,
        error: Optional[ErrorDetails] = None,
    ) -> None:
        """Append events and optionally update status, output and error.

        Raises:
            InstanceNotFound: If no instance is recorded under ``instance_id``.
        """

    async def get_instance(self, instance_id: str) -> OrchestrationInstance | None:
        """Retrieve a consistent snapshot of the instance, or ``None``."""

    async def list_instances(
        self, status: Optional[OrchestrationStatus] = None
    ) -> list[OrchestrationInstance]:
        """Return persisted instances, optionally filtered by status."""

    async def close(self) -> None:
        """Release backend resources."""
