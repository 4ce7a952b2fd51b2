"""Data models for persisted orchestration state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..contracts import ErrorDetails, utcnow


class OrchestrationStatus(str, Enum):
    """Runtime status of an orchestration instance."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CONTINUED_AS_NEW = "ContinuedAsNew"
    TERMINATED = "Terminated"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES = frozenset(
    {
        OrchestrationStatus.PENDING,
        OrchestrationStatus.RUNNING,
        OrchestrationStatus.CONTINUED_AS_NEW,
    }
)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)


class OrchestratorStarted(_Event):
    type: Literal["OrchestratorStarted"] = "OrchestratorStarted"
    execution_id: str
    name: str
    input: Any = None


class ActivityScheduled(_Event):
    type: Literal["ActivityScheduled"] = "ActivityScheduled"
    name: str
    input: Any = None
    sequence_number: int


class ActivityCompleted(_Event):
    type: Literal["ActivityCompleted"] = "ActivityCompleted"
    sequence_number: int
    result: Any = None


class ActivityFailed(_Event):
    type: Literal["ActivityFailed"] = "ActivityFailed"
    sequence_number: int
    error: ErrorDetails


class EventRaised(_Event):
    type: Literal["EventRaised"] = "EventRaised"
    name: str
    input: Any = None


class OrchestratorCompleted(_Event):
    type: Literal["OrchestratorCompleted"] = "OrchestratorCompleted"
    output: Any = None


class OrchestratorFailed(_Event):
    type: Literal["OrchestratorFailed"] = "OrchestratorFailed"
    error: ErrorDetails


class OrchestratorContinuedAsNew(_Event):
    type: Literal["OrchestratorContinuedAsNew"] = "OrchestratorContinuedAsNew"
    input: Any = None


class OrchestratorTerminated(_Event):
    type: Literal["OrchestratorTerminated"] = "OrchestratorTerminated"
    reason: Optional[str] = None


HistoryEvent = Annotated[
    Union[
        OrchestratorStarted,
        ActivityScheduled,
        ActivityCompleted,
        ActivityFailed,
        EventRaised,
        OrchestratorCompleted,
        OrchestratorFailed,
        OrchestratorContinuedAsNew,
        OrchestratorTerminated,
    ],
    Field(discriminator="type"),
]

HISTORY_EVENT_ADAPTER: TypeAdapter[HistoryEvent] = TypeAdapter(HistoryEvent)


def event_to_json(event: HistoryEvent) -> str:
    return event.model_dump_json()


def event_from_json(data: str) -> HistoryEvent:
    return HISTORY_EVENT_ADAPTER.validate_json(data)


class OrchestrationInstance(BaseModel):
    """Persisted orchestration instance data."""

    instance_id: str
    name: str
    status: OrchestrationStatus = OrchestrationStatus.PENDING
    input: Any = None
    history: list[HistoryEvent] = Field(default_factory=list)
    output: Any = None
    error: Optional[ErrorDetails] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)

    def current_execution(self) -> list[HistoryEvent]:
        """Events recorded since the most recent ``OrchestratorStarted``."""
        for index in range(len(self.history) - 1, -1, -1):
            if isinstance(self.history[index], OrchestratorStarted):
                return self.history[index:]
        return []

    @property
    def execution_id(self) -> Optional[str]:
        execution = self.current_execution()
        return execution[0].execution_id if execution else None

    def scheduled_activities(self) -> dict[int, ActivityScheduled]:
        return {
            event.sequence_number: event
            for event in self.current_execution()
            if isinstance(event, ActivityScheduled)
        }

    def completed_sequence_numbers(self) -> set[int]:
        return {
            event.sequence_number
            for event in self.current_execution()
            if isinstance(event, (ActivityCompleted, ActivityFailed))
        }

    def pending_activities(self) -> list[ActivityScheduled]:
        """Scheduled activities of the current execution without a completion."""
        done = self.completed_sequence_numbers()
        return [
            event
            for number, event in sorted(self.scheduled_activities().items())
            if number not in done
        ]
