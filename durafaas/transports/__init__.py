"""Transport selection for work items and completions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DurafaasConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

BACKENDS = ("inmemory", "redis")


def get_transport(
    backend: Optional[str] = None, config: Optional[DurafaasConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``DURAFAAS_TRANSPORT`` or config.

    The in-memory transport only connects a scheduler with executors in the
    same process; ``durafaas worker`` processes need ``redis``. Both sides
    must share the Redis queue prefix.
    """

    config = config or load_config()
    backend = (
        backend
        or os.getenv("DURAFAAS_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport(poll_interval=config.scheduler.poll_interval)
    if backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    raise ValueError(
        f"Unsupported transport backend: {backend} (expected one of {', '.join(BACKENDS)})"
    )


__all__ = ["BACKENDS", "BaseTransport", "InMemoryTransport", "get_transport"]
