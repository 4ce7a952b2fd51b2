"""Name-based registry of orchestrator and activity functions."""

from __future__ import annotations

from typing import Callable, Dict, Optional, TypeVar

from .errors import ActivityNotFound, OrchestratorNotFound

F = TypeVar("F", bound=Callable)


class FunctionRegistry:
    """Maps orchestrator and activity names to the Python callables behind them.

    Orchestrators are generator functions taking an ``OrchestrationContext``;
    activities take an ``ActivityContext`` and may be sync or async.

    Example:
        registry = FunctionRegistry()

        @registry.activity("SayHello")
        def say_hello(context):
            return f"Hello {context.get_input()}!"
    """

    def __init__(self) -> None:
        self._orchestrators: Dict[str, Callable] = {}
        self._activities: Dict[str, Callable] = {}

    def orchestrator(self, name: Optional[str] = None) -> Callable[[F], F]:
        """Decorator registering an orchestrator under ``name`` (default: function name)."""

        def decorator(fn: F) -> F:
            self._orchestrators[name or fn.__name__] = fn
            return fn

        return decorator

    def activity(self, name: Optional[str] = None) -> Callable[[F], F]:
        """Decorator registering an activity under ``name`` (default: function name)."""

        def decorator(fn: F) -> F:
            self._activities[name or fn.__name__] = fn
            return fn

        return decorator

    def get_orchestrator(self, name: str) -> Callable:
        try:
            return self._orchestrators[name]
        except KeyError:
            raise OrchestratorNotFound(name) from None

    def get_activity(self, name: str) -> Callable:
        try:
            return self._activities[name]
        except KeyError:
            raise ActivityNotFound(name) from None

    def has_orchestrator(self, name: str) -> bool:
        return name in self._orchestrators

    @property
    def orchestrator_names(self) -> list[str]:
        return sorted(self._orchestrators)

    @property
    def activity_names(self) -> list[str]:
        return sorted(self._activities)

    def merge(self, other: "FunctionRegistry") -> "FunctionRegistry":
        """Copy every registration of ``other`` into this registry."""
        self._orchestrators.update(other._orchestrators)
        self._activities.update(other._activities)
        return self
