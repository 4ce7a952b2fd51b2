"""Message contracts exchanged between the scheduler and activity workers."""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

ACTIVITY_TOPIC = "activities"
COMPLETION_TOPIC = "completions"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_value(obj: Any) -> Any:
    """Convert pydantic models (also nested in lists/dicts) to JSON values."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if isinstance(obj, (list, tuple)):
        return [to_value(item) for item in obj]
    if isinstance(obj, dict):
        return {key: to_value(value) for key, value in obj.items()}
    return obj


class ErrorDetails(BaseModel):
    """Serializable description of an exception."""

    type: str
    message: str
    stack_trace: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorDetails":
        return cls(
            type=type(exc).__name__,
            message=str(exc),
            stack_trace="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )


class ActivityResult(BaseModel):
    """Outcome of a single activity execution."""

    result: Any = None
    error: Optional[ErrorDetails] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class TaskMessage(BaseModel):
    """
    Envelope exchanged over the transport. Carries a work item on the
    activity topic and its completion on the completion topic.
    """

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    instance_id: str
    execution_id: str
    sequence_number: int
    activity_name: str
    input: Any = None
    result: Any = None
    error: Optional[ErrorDetails] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TaskMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def completed_with(self, outcome: ActivityResult) -> "TaskMessage":
        """Build the completion message answering this work item."""
        return self.model_copy(
            update={
                "message_id": uuid.uuid4().hex,
                "result": outcome.result,
                "error": outcome.error,
                "timestamp": utcnow(),
            }
        )
