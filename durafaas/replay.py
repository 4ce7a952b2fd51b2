"""Deterministic replay of orchestrator bodies over recorded history.

An orchestrator is a generator function. Each replay pass starts the body
from scratch and feeds it results straight out of the history:

* a task whose completion is recorded resumes the body immediately with the
  recorded result (or throws the recorded failure into it);
* the first yielded task without a completion suspends the pass, and the
  scheduler gets back the activity calls reached for the first time;
* returning from the body completes the execution.

Because nothing the body observes comes from outside the history, running a
pass twice over the same events produces the same calls and the same output.
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from .context import ActivityCall, ExecutionHistory, OrchestrationContext, Task
from .contracts import ErrorDetails, to_value
from .persistence.models import OrchestrationInstance

logger = logging.getLogger(__name__)


class ReplayStatus(str, Enum):
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CONTINUED_AS_NEW = "continued_as_new"


class ReplayOutcome(BaseModel):
    """Result of one replay pass."""

    status: ReplayStatus
    new_calls: List[ActivityCall] = Field(default_factory=list)
    pending: List[int] = Field(default_factory=list)
    output: Any = None
    error: Optional[ErrorDetails] = None
    continue_as_new_input: Any = None


class OrchestrationReplayEngine:
    """Drives an orchestrator body across suspensions using its history."""

    def replay(
        self, orchestrator: Callable, instance: OrchestrationInstance
    ) -> ReplayOutcome:
        history = ExecutionHistory(instance.current_execution())
        context = OrchestrationContext(instance.instance_id, history)

        try:
            body = orchestrator(context)
        except Exception as exc:
            return self._failed(context, history, exc)
        if not inspect.isgenerator(body):
            return self._finished(context, history, body)

        value: Any = None
        error: Optional[BaseException] = None
        while True:
            try:
                yielded = body.throw(error) if error is not None else body.send(value)
            except StopIteration as stop:
                return self._finished(context, history, stop.value)
            except Exception as exc:
                return self._failed(context, history, exc)

            if not isinstance(yielded, Task):
                value, error = None, TypeError(
                    f"Orchestrators must yield tasks, got {type(yielded).__name__}"
                )
                continue

            if not yielded.is_completed:
                body.close()
                return ReplayOutcome(
                    status=ReplayStatus.SUSPENDED,
                    new_calls=context.new_calls,
                    pending=self._pending(context, history),
                )

            context._resume_with(yielded)
            if yielded.is_faulted:
                value, error = None, yielded.exception
            else:
                value, error = yielded.result, None

    # ------------------------------------------------------------------
    def _pending(
        self, context: OrchestrationContext, history: ExecutionHistory
    ) -> List[int]:
        scheduled = set(history.scheduled) | {
            call.sequence_number for call in context.new_calls
        }
        return sorted(scheduled - set(history.completions))

    def _finished(
        self, context: OrchestrationContext, history: ExecutionHistory, output: Any
    ) -> ReplayOutcome:
        if context.continued_as_new:
            return ReplayOutcome(
                status=ReplayStatus.CONTINUED_AS_NEW,
                new_calls=context.new_calls,
                continue_as_new_input=context.continue_as_new_input,
            )
        return ReplayOutcome(
            status=ReplayStatus.COMPLETED,
            new_calls=context.new_calls,
            pending=self._pending(context, history),
            output=to_value(output),
        )

    def _failed(
        self,
        context: OrchestrationContext,
        history: ExecutionHistory,
        exc: Exception,
    ) -> ReplayOutcome:
        logger.debug(
            f"Orchestrator {context.name} raised for instance_id={context.instance_id}: {exc}"
        )
        return ReplayOutcome(
            status=ReplayStatus.FAILED,
            new_calls=context.new_calls,
            pending=self._pending(context, history),
            error=ErrorDetails.from_exception(exc),
        )
