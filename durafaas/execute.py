"""Activity execution engine for durafaas orchestrations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional

from .context import ActivityContext
from .contracts import (
    ACTIVITY_TOPIC,
    COMPLETION_TOPIC,
    ActivityResult,
    ErrorDetails,
    TaskMessage,
    to_value,
)
from .registry import FunctionRegistry
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class ActivityExecutor:
    """Executes activities by listening to work items on the transport.

    Stateless: every work item carries everything needed to run it, and the
    outcome goes back on the completion topic. Delivery is at-least-once, so
    activities should be idempotent or free of side effects.
    """

    def __init__(
        self,
        transport: BaseTransport,
        registry: FunctionRegistry,
        topic: str = ACTIVITY_TOPIC,
        completion_topic: str = COMPLETION_TOPIC,
        publish_attempts: int = 5,
        backoff_base: float = 1.5,
        backoff_jitter: float = 0.5,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._topic = topic
        self._completion_topic = completion_topic
        self._publish_attempts = publish_attempts
        self._backoff_base = backoff_base
        self._backoff_jitter = backoff_jitter
        self.executed_activities = 0

    async def execute(
        self, name: str, input: Any, instance_id: str, sequence_number: int = 0
    ) -> ActivityResult:
        """Run activity ``name``; failures are captured in the result, never raised."""
        context = ActivityContext(instance_id, name, input, sequence_number)
        try:
            fn = self._registry.get_activity(name)
            if inspect.iscoroutinefunction(fn):
                result = await fn(context)
            else:
                result = await asyncio.to_thread(fn, context)
        except Exception as e:
            logger.error(
                f"Activity {name} (#{sequence_number}) failed for instance_id={instance_id}: {e}"
            )
            return ActivityResult(error=ErrorDetails.from_exception(e))

        self.executed_activities += 1
        logger.info(
            f"Activity {name} (#{sequence_number}) completed for instance_id={instance_id}"
        )
        return ActivityResult(result=to_value(result))

    async def handle(self, message: TaskMessage) -> TaskMessage:
        """Execute the work item in ``message`` and publish its completion."""
        outcome = await self.execute(
            message.activity_name,
            message.input,
            message.instance_id,
            message.sequence_number,
        )
        completion = message.completed_with(outcome)
        await self._transport.publish_with_retry(
            self._completion_topic,
            completion,
            attempts=self._publish_attempts,
            backoff_base=self._backoff_base,
            backoff_jitter=self._backoff_jitter,
        )
        return completion

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for work items on the activity topic."""
        async for raw_message, message in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except Exception:
                # Stays pending until recover() runs in a restarted scheduler.
                logger.exception(
                    f"Could not report {message.activity_name} (#{message.sequence_number}) "
                    f"for instance_id={message.instance_id}"
                )
                continue
            await self._transport.ack(raw_message)
