"""Exception hierarchy for durafaas orchestrations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .contracts import ErrorDetails


class DurafaasError(Exception):
    """Base class for all runtime errors."""


class InstanceConflict(DurafaasError):
    """An active instance already exists for the requested instance ID."""

    def __init__(self, instance_id: str, status: str) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"An instance with ID '{instance_id}' is already {status.lower()}."
        )


class InstanceNotFound(DurafaasError):
    """No instance is recorded under the requested instance ID."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"No instance with ID '{instance_id}' found.")


class OrchestratorNotFound(DurafaasError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Orchestrator '{name}' is not registered.")


class ActivityNotFound(DurafaasError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Activity '{name}' is not registered.")


class ActivityFailedError(DurafaasError):
    """Raised inside an orchestrator body when an awaited activity failed."""

    def __init__(
        self, name: str, sequence_number: int, details: Optional["ErrorDetails"]
    ) -> None:
        self.name = name
        self.sequence_number = sequence_number
        self.details = details
        reason = f"{details.type}: {details.message}" if details else "unknown error"
        super().__init__(f"Activity '{name}' (#{sequence_number}) failed: {reason}")


class NonDeterminismError(DurafaasError):
    """The orchestrator produced a call sequence that contradicts its history."""


class TransientDispatchFailure(DurafaasError):
    """A work item could not be handed to the activity transport."""


class OrchestrationTimeout(DurafaasError):
    """A bounded wait for an instance expired before it reached a terminal state."""

    def __init__(self, instance_id: str, timeout: float, status: str) -> None:
        self.instance_id = instance_id
        self.timeout = timeout
        self.status = status
        super().__init__(
            f"Instance '{instance_id}' still {status} after {timeout:.1f}s."
        )
