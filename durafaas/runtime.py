"""Assemble a scheduler from configuration."""

from __future__ import annotations

from typing import Optional

from .config import DurafaasConfig, load_config
from .functions import hello_registry
from .persistence import InstanceStore, get_store
from .registry import FunctionRegistry
from .scheduler import OrchestrationScheduler
from .transports import BaseTransport, get_transport


def create_scheduler(
    config: Optional[DurafaasConfig] = None,
    registry: Optional[FunctionRegistry] = None,
    store: Optional[InstanceStore] = None,
    transport: Optional[BaseTransport] = None,
) -> OrchestrationScheduler:
    """Build a scheduler wired to the configured store and transport.

    Without an explicit ``registry`` the built-in HelloDurable functions are
    registered.
    """
    config = config or load_config()
    return OrchestrationScheduler(
        store=store or get_store(config=config),
        transport=transport or get_transport(config=config),
        registry=registry or hello_registry,
        config=config.scheduler,
    )
