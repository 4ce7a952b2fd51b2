"""Base transport interface for durafaas work items and completions."""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TaskMessage
from ..utils.retry import schedule_retry

logger = logging.getLogger(__name__)

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of ``TaskMessage`` envelopes keyed by topic.

    durafaas uses two topics: work items travel on ``ACTIVITY_TOPIC`` from
    the scheduler to executors, and their outcomes come back on
    ``COMPLETION_TOPIC``. Delivery is at-least-once; the scheduler drops
    duplicate completions by sequence number.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: TaskMessage) -> None:
        raise NotImplementedError

    async def publish_with_retry(
        self,
        topic: str,
        message: TaskMessage,
        attempts: int = 5,
        backoff_base: float = 1.5,
        backoff_jitter: float = 0.5,
    ) -> None:
        """Publish ``message``, backing off between failed attempts.

        Raises the last publish error once ``attempts`` tries have failed.
        """
        for attempt in range(1, attempts + 1):
            try:
                await self.publish(topic, message)
                return
            except Exception as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Publish attempt {attempt}/{attempts} of #{message.sequence_number} "
                    f"for instance_id={message.instance_id} on {topic} failed: {e}"
                )
                await schedule_retry(attempt, base=backoff_base, jitter=backoff_jitter)

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TaskMessage]]:
        """Yield raw transport message and TaskMessage pairs.

        Args:
            topic: ``ACTIVITY_TOPIC`` or ``COMPLETION_TOPIC``
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError
