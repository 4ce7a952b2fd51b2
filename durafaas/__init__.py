"""durafaas: durable orchestrations with deterministic replay."""

from .context import ActivityContext, OrchestrationContext
from .contracts import ActivityResult, ErrorDetails, TaskMessage
from .errors import (
    ActivityFailedError,
    DurafaasError,
    InstanceConflict,
    InstanceNotFound,
    OrchestrationTimeout,
)
from .execute import ActivityExecutor
from .persistence import OrchestrationInstance, OrchestrationStatus, get_store
from .registry import FunctionRegistry
from .replay import OrchestrationReplayEngine
from .runtime import create_scheduler
from .scheduler import OrchestrationScheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActivityContext",
    "ActivityExecutor",
    "ActivityFailedError",
    "ActivityResult",
    "DurafaasError",
    "ErrorDetails",
    "FunctionRegistry",
    "InstanceConflict",
    "InstanceNotFound",
    "OrchestrationContext",
    "OrchestrationInstance",
    "OrchestrationReplayEngine",
    "OrchestrationScheduler",
    "OrchestrationStatus",
    "OrchestrationTimeout",
    "TaskMessage",
    "create_scheduler",
    "get_store",
    "get_transport",
]
