"""Orchestration scheduler: starts instances, dispatches activities, advances replay."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Set, Tuple

from .config import SchedulerConfig
from .context import ActivityCall
from .contracts import ACTIVITY_TOPIC, COMPLETION_TOPIC, ErrorDetails, TaskMessage, to_value
from .errors import InstanceNotFound, OrchestrationTimeout, TransientDispatchFailure
from .execute import ActivityExecutor
from .persistence import (
    ActivityCompleted,
    ActivityFailed,
    ActivityScheduled,
    EventRaised,
    HistoryEvent,
    InstanceStore,
    OrchestrationInstance,
    OrchestrationStatus,
    OrchestratorCompleted,
    OrchestratorContinuedAsNew,
    OrchestratorFailed,
    OrchestratorStarted,
    OrchestratorTerminated,
)
from .registry import FunctionRegistry
from .replay import OrchestrationReplayEngine, ReplayStatus
from .transports import BaseTransport
from .utils.retry import next_poll_interval

logger = logging.getLogger(__name__)

InFlightKey = Tuple[str, str, int]


class _InstanceLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class OrchestrationScheduler:
    """Owns the lifecycle of orchestration instances.

    Every mutation of an instance happens under that instance's own
    ``asyncio.Lock``; different instances never contend. Replay runs inline
    under the lock, activity execution happens elsewhere (local workers or
    remote processes reading the activity topic).
    """

    def __init__(
        self,
        store: InstanceStore,
        transport: BaseTransport,
        registry: FunctionRegistry,
        config: Optional[SchedulerConfig] = None,
        engine: Optional[OrchestrationReplayEngine] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.registry = registry
        self.config = config or SchedulerConfig()
        self._engine = engine or OrchestrationReplayEngine()
        self._locks: Dict[str, _InstanceLock] = {}
        self._in_flight: Set[InFlightKey] = set()
        self._background: Set[asyncio.Task] = set()
        self._services: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Client operations
    async def start_new(
        self,
        orchestrator_name: str,
        instance_id: Optional[str] = None,
        input: Any = None,
    ) -> str:
        """Create an instance of ``orchestrator_name`` and schedule its first replay.

        Raises:
            OrchestratorNotFound: If no orchestrator is registered under the name.
            InstanceConflict: If an active instance already uses ``instance_id``.
        """
        self.registry.get_orchestrator(orchestrator_name)
        instance_id = instance_id or uuid.uuid4().hex
        started = OrchestratorStarted(
            execution_id=uuid.uuid4().hex,
            name=orchestrator_name,
            input=to_value(input),
        )
        async with self._instance_lock(instance_id):
            await self.store.create_instance(instance_id, orchestrator_name, started)
        logger.info(
            f"Started orchestration {orchestrator_name} with instance_id={instance_id}"
        )
        self._spawn(self._advance(instance_id))
        return instance_id

    async def get_status(self, instance_id: str) -> OrchestrationInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def list_instances(
        self, status: Optional[OrchestrationStatus] = None
    ) -> list[OrchestrationInstance]:
        return await self.store.list_instances(status)

    async def wait_for_completion(
        self,
        instance_id: str,
        timeout: float = 30.0,
        initial_interval: float = 0.05,
        max_interval: float = 1.0,
    ) -> OrchestrationInstance:
        """Poll until the instance is terminal, backing off between polls.

        Raises:
            InstanceNotFound: If the instance does not exist.
            OrchestrationTimeout: If ``timeout`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = initial_interval
        while True:
            instance = await self.get_status(instance_id)
            if instance.status.is_terminal:
                return instance
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OrchestrationTimeout(instance_id, timeout, instance.status.value)
            logger.debug(
                f"Orchestration {instance.name} still {instance.status.value} "
                f"for instance_id={instance_id}"
            )
            await asyncio.sleep(min(interval, remaining))
            interval = next_poll_interval(interval, maximum=max_interval)

    async def raise_event(self, instance_id: str, event_name: str, data: Any = None) -> bool:
        """Deliver an external event; returns ``False`` if the instance is no longer active."""
        async with self._instance_lock(instance_id):
            instance = await self.get_status(instance_id)
            if instance.status.is_terminal:
                logger.warning(
                    f"Ignoring event {event_name} for {instance.status.value} instance_id={instance_id}"
                )
                return False
            await self.store.append_events(
                instance_id, [EventRaised(name=event_name, input=to_value(data))]
            )
        logger.info(f"Raised event {event_name} for instance_id={instance_id}")
        await self._advance(instance_id)
        return True

    async def terminate(self, instance_id: str, reason: Optional[str] = None) -> bool:
        """Stop an active instance; returns ``False`` if it had already finished."""
        async with self._instance_lock(instance_id):
            instance = await self.get_status(instance_id)
            if instance.status.is_terminal:
                return False
            await self.store.append_events(
                instance_id,
                [OrchestratorTerminated(reason=reason)],
                status=OrchestrationStatus.TERMINATED,
            )
        logger.info(f"Terminated instance_id={instance_id}: {reason}")
        return True

    # ------------------------------------------------------------------
    # Completions
    async def raise_activity_completion(
        self,
        instance_id: str,
        sequence_number: int,
        result: Any = None,
        error: Optional[ErrorDetails] = None,
        execution_id: Optional[str] = None,
    ) -> bool:
        """Record the outcome of a scheduled activity and advance the instance.

        Completions for unknown or finished instances, other executions,
        unscheduled sequence numbers, or already recorded sequence numbers are
        ignored and ``False`` is returned.
        """
        async with self._instance_lock(instance_id):
            if execution_id is not None:
                self._in_flight.discard((instance_id, execution_id, sequence_number))
            instance = await self.store.get_instance(instance_id)
            if instance is None or instance.status.is_terminal:
                logger.warning(
                    f"Ignoring completion #{sequence_number} for inactive instance_id={instance_id}"
                )
                return False
            if execution_id is not None and execution_id != instance.execution_id:
                logger.warning(
                    f"Ignoring completion #{sequence_number} from stale execution "
                    f"{execution_id} for instance_id={instance_id}"
                )
                return False
            self._in_flight.discard((instance_id, instance.execution_id, sequence_number))
            if sequence_number not in instance.scheduled_activities():
                logger.warning(
                    f"Ignoring completion for unscheduled #{sequence_number} "
                    f"for instance_id={instance_id}"
                )
                return False
            if sequence_number in instance.completed_sequence_numbers():
                logger.warning(
                    f"Ignoring duplicate completion #{sequence_number} for instance_id={instance_id}"
                )
                return False

            event: HistoryEvent
            if error is not None:
                event = ActivityFailed(sequence_number=sequence_number, error=error)
            else:
                event = ActivityCompleted(sequence_number=sequence_number, result=result)
            await self.store.append_events(instance_id, [event])

        await self._advance(instance_id)
        return True

    # ------------------------------------------------------------------
    # Replay and dispatch
    async def _advance(self, instance_id: str) -> None:
        """Run one replay pass and persist its outcome, then dispatch new work."""
        async with self._instance_lock(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None or instance.status.is_terminal:
                return

            orchestrator = self.registry.get_orchestrator(instance.name)
            outcome = self._engine.replay(orchestrator, instance)

            # Checkpoint: scheduled calls are durable before any work item leaves.
            events: List[HistoryEvent] = [
                ActivityScheduled(
                    name=call.name, input=call.input, sequence_number=call.sequence_number
                )
                for call in outcome.new_calls
            ]
            status = OrchestrationStatus.RUNNING
            output = None
            if outcome.status is ReplayStatus.COMPLETED:
                events.append(OrchestratorCompleted(output=outcome.output))
                status = OrchestrationStatus.COMPLETED
                output = outcome.output
            elif outcome.status is ReplayStatus.FAILED:
                events.append(OrchestratorFailed(error=outcome.error))
                status = OrchestrationStatus.FAILED
            elif outcome.status is ReplayStatus.CONTINUED_AS_NEW:
                events.append(OrchestratorContinuedAsNew(input=outcome.continue_as_new_input))
                events.append(
                    OrchestratorStarted(
                        execution_id=uuid.uuid4().hex,
                        name=instance.name,
                        input=outcome.continue_as_new_input,
                    )
                )
                status = OrchestrationStatus.CONTINUED_AS_NEW

            if events or status != instance.status:
                await self.store.append_events(
                    instance_id, events, status=status, output=output, error=outcome.error
                )

        if outcome.status is ReplayStatus.COMPLETED:
            logger.info(f"Orchestration {instance.name} completed for instance_id={instance_id}")
        elif outcome.status is ReplayStatus.FAILED:
            logger.error(
                f"Orchestration {instance.name} failed for instance_id={instance_id}: "
                f"{outcome.error.type}: {outcome.error.message}"
            )
        elif outcome.status is ReplayStatus.CONTINUED_AS_NEW:
            logger.info(f"Orchestration {instance.name} continued as new for instance_id={instance_id}")
            self._spawn(self._advance(instance_id))
            return

        if outcome.status is not ReplayStatus.SUSPENDED:
            return
        for call in outcome.new_calls:
            self._spawn(self._dispatch(instance_id, instance.execution_id, call))

    async def _dispatch(self, instance_id: str, execution_id: str, call: ActivityCall) -> None:
        """Publish a work item, retrying transient transport failures with backoff."""
        key = (instance_id, execution_id, call.sequence_number)
        if key in self._in_flight:
            logger.debug(f"Activity #{call.sequence_number} already in flight for instance_id={instance_id}")
            return
        self._in_flight.add(key)

        message = TaskMessage(
            instance_id=instance_id,
            execution_id=execution_id,
            sequence_number=call.sequence_number,
            activity_name=call.name,
            input=call.input,
        )
        attempts = self.config.dispatch_max_attempts
        try:
            await self.transport.publish_with_retry(
                ACTIVITY_TOPIC,
                message,
                attempts=attempts,
                backoff_base=self.config.dispatch_backoff_base,
                backoff_jitter=self.config.dispatch_backoff_jitter,
            )
        except Exception as e:
            logger.error(
                f"Giving up dispatch of {call.name} (#{call.sequence_number}) "
                f"for instance_id={instance_id}: {e}"
            )
        else:
            logger.debug(
                f"Dispatched {call.name} (#{call.sequence_number}) for instance_id={instance_id}"
            )
            return

        self._in_flight.discard(key)
        failure = TransientDispatchFailure(
            f"Could not dispatch {call.name} (#{call.sequence_number}) after {attempts} attempts"
        )
        await self.raise_activity_completion(
            instance_id,
            call.sequence_number,
            error=ErrorDetails.from_exception(failure),
            execution_id=execution_id,
        )

    def is_in_flight(self, instance_id: str, execution_id: str, sequence_number: int) -> bool:
        return (instance_id, execution_id, sequence_number) in self._in_flight

    async def recover(self) -> int:
        """Re-drive every active instance found in the store.

        Used after a restart: instances that never got their first replay are
        advanced, and scheduled activities without a completion that are not
        already in flight are dispatched again. Returns the number of
        instances touched.
        """
        touched = 0
        for instance in await self.store.list_instances():
            if not instance.status.is_active:
                continue
            touched += 1
            # Completions may have been recorded without the follow-up replay.
            await self._advance(instance.instance_id)
            current = await self.store.get_instance(instance.instance_id)
            if current is None or not current.status.is_active:
                continue
            for scheduled in current.pending_activities():
                call = ActivityCall(
                    name=scheduled.name,
                    input=scheduled.input,
                    sequence_number=scheduled.sequence_number,
                )
                await self._dispatch(current.instance_id, current.execution_id, call)
        if touched:
            logger.info(f"Recovered {touched} active orchestration instance(s)")
        return touched

    # ------------------------------------------------------------------
    # Service lifecycle
    async def start(self, local_workers: Optional[int] = None) -> None:
        """Connect the transport and run completion listener plus local activity workers."""
        if self._services:
            return
        await self.transport.connect()
        self._run_service(self._consume_completions(), "completions")
        workers = self.config.worker_count if local_workers is None else local_workers
        for n in range(workers):
            executor = ActivityExecutor(
                self.transport,
                self.registry,
                publish_attempts=self.config.dispatch_max_attempts,
                backoff_base=self.config.dispatch_backoff_base,
                backoff_jitter=self.config.dispatch_backoff_jitter,
            )
            self._run_service(executor.start(), f"worker-{n}")
        logger.info(f"Scheduler started with {workers} local activity worker(s)")
        await self.recover()

    async def stop(self) -> None:
        services, self._services = self._services, []
        pending = services + list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.transport.disconnect()
        logger.info("Scheduler stopped")

    async def __aenter__(self) -> "OrchestrationScheduler":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _consume_completions(self, lifespan: Optional[float] = None) -> None:
        async for raw_message, message in self.transport.subscribe(
            COMPLETION_TOPIC, lifespan=lifespan
        ):
            try:
                await self.raise_activity_completion(
                    message.instance_id,
                    message.sequence_number,
                    result=message.result,
                    error=message.error,
                    execution_id=message.execution_id,
                )
            except Exception:
                logger.exception(
                    f"Failed to record completion #{message.sequence_number} "
                    f"for instance_id={message.instance_id}"
                )
                continue
            await self.transport.ack(raw_message)

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _instance_lock(self, instance_id: str) -> AsyncIterator[None]:
        """Hold the lock of ``instance_id``; idle locks are dropped."""
        entry = self._locks.get(instance_id)
        if entry is None:
            entry = self._locks[instance_id] = _InstanceLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[instance_id]

    def _run_service(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_service_done)
        self._services.append(task)

    def _on_service_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Scheduler service {task.get_name()} crashed", exc_info=exc)
        else:
            logger.warning(f"Scheduler service {task.get_name()} exited")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background orchestration task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until no replay or dispatch work is queued in this process."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
