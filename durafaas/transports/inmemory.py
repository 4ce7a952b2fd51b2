"""In-memory transport for a single-process runtime and tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import TaskMessage
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, TaskMessage]]):
    """Simple in-process queue. Several subscribers may share a topic."""

    def __init__(self, poll_interval: float = 0.01) -> None:
        self._queues: Dict[str, Deque[Tuple[str, TaskMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, TaskMessage], TaskMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                # Hand out a fresh copy so consumers never share state.
                yield raw_message, TaskMessage.from_json(raw_message[0])
                continue

            await asyncio.sleep(self.poll_interval)

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues[topic])

    async def ack(self, raw_message: Tuple[str, TaskMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
