"""In-memory implementation of the instance store."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from ..contracts import ErrorDetails, utcnow
from ..errors import InstanceConflict, InstanceNotFound
from .models import (
    HistoryEvent,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorStarted,
)
from .repository import InstanceStore


class InMemoryInstanceStore(InstanceStore):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each operation runs without awaiting,
    so it is atomic with respect to other coroutines on the loop.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, OrchestrationInstance] = {}

    # ------------------------------------------------------------------
    async def create_instance(
        self, instance_id: str, name: str, started: OrchestratorStarted
    ) -> OrchestrationInstance:
        existing = self._instances.get(instance_id)
        if existing is not None and existing.status.is_active:
            raise InstanceConflict(instance_id, existing.status.value)
        now = utcnow()
        instance = OrchestrationInstance(
            instance_id=instance_id,
            name=name,
            status=OrchestrationStatus.PENDING,
            input=started.input,
            history=[started],
            created_at=now,
            last_updated_at=now,
        )
        self._instances[instance_id] = instance
        return instance.model_copy(deep=True)

    async def append_events(
        self,
        instance_id: str,
        events: Sequence[HistoryEvent],
        status: Optional[OrchestrationStatus] = None,
        output: Any = None,
        error: Optional[ErrorDetails] = None,
    ) -> None:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        instance.history.extend(events)
        for event in events:
            if isinstance(event, OrchestratorStarted):
                instance.input = event.input
        if status is not None:
            instance.status = status
        if output is not None:
            instance.output = output
        if error is not None:
            instance.error = error
        instance.last_updated_at = utcnow()

    async def get_instance(self, instance_id: str) -> OrchestrationInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self, status: Optional[OrchestrationStatus] = None
    ) -> list[OrchestrationInstance]:
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if status is None or instance.status == status
        ]

    async def close(self) -> None:
        pass
