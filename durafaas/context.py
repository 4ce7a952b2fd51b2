"""Contexts handed to orchestrator and activity functions, and the tasks they yield."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel

from .contracts import to_value
from .errors import ActivityFailedError, NonDeterminismError
from .persistence.models import (
    ActivityCompleted,
    ActivityFailed,
    ActivityScheduled,
    EventRaised,
    HistoryEvent,
    OrchestratorStarted,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ActivityCall(BaseModel):
    """An activity invocation first reached during a replay pass."""

    name: str
    input: Any = None
    sequence_number: int


class ExecutionHistory:
    """Lookup tables over the events of one orchestration execution."""

    def __init__(self, events: Sequence[HistoryEvent]) -> None:
        if not events or not isinstance(events[0], OrchestratorStarted):
            raise ValueError("Execution history must begin with OrchestratorStarted")
        self.started: OrchestratorStarted = events[0]
        self.scheduled: Dict[int, ActivityScheduled] = {}
        self.completions: Dict[int, Tuple[int, HistoryEvent]] = {}
        self.raised: Dict[str, List[Tuple[int, EventRaised]]] = defaultdict(list)
        # Index of the last event the orchestrator itself produced; everything
        # at or before it has been observed by an earlier replay pass.
        self.checkpoint = 0
        for index, event in enumerate(events):
            if isinstance(event, ActivityScheduled):
                self.scheduled[event.sequence_number] = event
                self.checkpoint = index
            elif isinstance(event, (ActivityCompleted, ActivityFailed)):
                self.completions.setdefault(event.sequence_number, (index, event))
            elif isinstance(event, EventRaised):
                self.raised[event.name].append((index, event))


class Task:
    """Something an orchestrator can ``yield`` and get a result back from."""

    def __init__(self) -> None:
        self.is_completed = False
        self.is_faulted = False
        self.result: Any = None
        self.exception: Optional[Exception] = None
        self.completion_index: Optional[int] = None
        self.completed_at: Optional[datetime] = None

    def _complete(self, index: int, timestamp: Optional[datetime], result: Any) -> None:
        self.is_completed = True
        self.result = result
        self.completion_index = index
        self.completed_at = timestamp

    def _fault(self, index: int, timestamp: datetime, exception: Exception) -> None:
        self._complete(index, timestamp, None)
        self.is_faulted = True
        self.exception = exception


class ActivityTask(Task):
    def __init__(self, name: str, input: Any, sequence_number: int) -> None:
        super().__init__()
        self.name = name
        self.input = input
        self.sequence_number = sequence_number

    def __repr__(self) -> str:
        return f"ActivityTask({self.name!r}, #{self.sequence_number})"


class ExternalEventTask(Task):
    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name


class WhenAllTask(Task):
    """Barrier over child tasks; results keep the children's order."""

    def __init__(self, children: Sequence[Task]) -> None:
        super().__init__()
        self.children = list(children)
        faulted = [child for child in self.children if child.is_faulted]
        if faulted:
            first = min(faulted, key=lambda child: child.completion_index)
            self._fault(first.completion_index, first.completed_at, first.exception)
        elif all(child.is_completed for child in self.children):
            if self.children:
                last = max(self.children, key=lambda child: child.completion_index)
                self._complete(
                    last.completion_index,
                    last.completed_at,
                    [child.result for child in self.children],
                )
            else:
                # Orders before every recorded event when nested in another barrier.
                self._complete(-1, None, [])


class OrchestrationContext:
    """Deterministic API available to an orchestrator body during replay.

    Everything an orchestrator observes (activity results, external events,
    the current time) comes from the recorded history, so replaying the same
    history always drives the body down the same path.
    """

    def __init__(self, instance_id: str, history: ExecutionHistory) -> None:
        self.instance_id = instance_id
        self.execution_id = history.started.execution_id
        self.name = history.started.name
        self.current_utc_datetime: datetime = history.started.timestamp
        self.is_replaying = history.checkpoint > 0
        self.new_calls: List[ActivityCall] = []
        self.continue_as_new_input: Any = None
        self.continued_as_new = False
        self._history = history
        self._input = history.started.input
        self._next_sequence = 0
        self._event_cursor: Dict[str, int] = defaultdict(int)

    def get_input(self, model: Optional[Type[ModelT]] = None) -> Any:
        """Return the orchestration input, optionally validated into ``model``."""
        if model is not None and self._input is not None:
            return model.model_validate(self._input)
        return self._input

    def call_activity(self, name: str, input: Any = None) -> ActivityTask:
        """Schedule activity ``name``; yield the returned task to wait for it."""
        sequence_number = self._next_sequence
        self._next_sequence += 1
        value = to_value(input)

        scheduled = self._history.scheduled.get(sequence_number)
        if scheduled is None:
            self.new_calls.append(
                ActivityCall(name=name, input=value, sequence_number=sequence_number)
            )
        elif scheduled.name != name:
            raise NonDeterminismError(
                f"Call #{sequence_number} is '{name}' but history recorded "
                f"'{scheduled.name}'. Orchestrator code must be deterministic."
            )

        task = ActivityTask(name, value, sequence_number)
        completion = self._history.completions.get(sequence_number)
        if completion is not None:
            index, event = completion
            if isinstance(event, ActivityCompleted):
                task._complete(index, event.timestamp, event.result)
            else:
                task._fault(
                    index,
                    event.timestamp,
                    ActivityFailedError(name, sequence_number, event.error),
                )
        return task

    def task_all(self, tasks: Sequence[Task]) -> WhenAllTask:
        """Fan-in: a task that completes once every task in ``tasks`` has."""
        return WhenAllTask(tasks)

    def wait_for_external_event(self, name: str) -> ExternalEventTask:
        """Wait for the next event raised under ``name``."""
        task = ExternalEventTask(name)
        position = self._event_cursor[name]
        self._event_cursor[name] += 1
        raised = self._history.raised.get(name, [])
        if position < len(raised):
            index, event = raised[position]
            task._complete(index, event.timestamp, event.input)
        return task

    def continue_as_new(self, input: Any = None) -> None:
        """Restart the orchestration with fresh history once the body returns."""
        self.continued_as_new = True
        self.continue_as_new_input = to_value(input)

    def _resume_with(self, task: Task) -> None:
        if task.completion_index is not None:
            self.is_replaying = (
                self.is_replaying and task.completion_index < self._history.checkpoint
            )
        if task.completed_at is not None and task.completed_at > self.current_utc_datetime:
            self.current_utc_datetime = task.completed_at


class ActivityContext:
    """Information about the activity invocation currently executing."""

    def __init__(
        self,
        instance_id: str,
        activity_name: str,
        input: Any = None,
        sequence_number: int = 0,
    ) -> None:
        self.instance_id = instance_id
        self.activity_name = activity_name
        self.sequence_number = sequence_number
        self._input = input

    def get_input(self, model: Optional[Type[ModelT]] = None) -> Any:
        if model is not None:
            return model.model_validate(self._input)
        return self._input
