"""Scheduler tests driven without background workers."""

import asyncio

import pytest

from durafaas.config import SchedulerConfig
from durafaas.contracts import ACTIVITY_TOPIC, ErrorDetails
from durafaas.errors import (
    InstanceConflict,
    InstanceNotFound,
    OrchestrationTimeout,
    OrchestratorNotFound,
)
from durafaas.functions import hello_registry
from durafaas.persistence import (
    ActivityFailed,
    InMemoryInstanceStore,
    OrchestrationStatus,
    OrchestratorStarted,
)
from durafaas.registry import FunctionRegistry
from durafaas.scheduler import OrchestrationScheduler
from durafaas.transports import InMemoryTransport


class FlakyTransport(InMemoryTransport):
    """Rejects the first ``failures`` publishes on the activity topic."""

    def __init__(self, failures):
        super().__init__(poll_interval=0.001)
        self.failures = failures
        self.attempts = 0

    async def publish(self, topic, message):
        if topic == ACTIVITY_TOPIC:
            self.attempts += 1
            if self.attempts <= self.failures:
                raise ConnectionError("broker unavailable")
        await super().publish(topic, message)


def _scheduler(store=None, transport=None, registry=None, **config):
    return OrchestrationScheduler(
        store=store or InMemoryInstanceStore(),
        transport=transport or InMemoryTransport(poll_interval=0.001),
        registry=registry or hello_registry,
        config=SchedulerConfig(**config),
    )


async def _no_wait(*args, **kwargs):
    return None


@pytest.mark.asyncio
async def test_start_new_persists_schedule_before_dispatch():
    scheduler = _scheduler()

    instance_id = await scheduler.start_new("HelloDurable", instance_id="id-1")
    await scheduler.drain()

    instance = await scheduler.get_status(instance_id)
    assert instance.status is OrchestrationStatus.RUNNING
    assert [e.type for e in instance.history] == [
        "OrchestratorStarted",
        "ActivityScheduled",
        "ActivityScheduled",
        "ActivityScheduled",
    ]
    assert scheduler.transport.pending(ACTIVITY_TOPIC) == 3
    assert all(
        scheduler.is_in_flight("id-1", instance.execution_id, seq) for seq in range(3)
    )


@pytest.mark.asyncio
async def test_start_new_conflicts_while_instance_is_active():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurable", instance_id="id-1")

    with pytest.raises(InstanceConflict):
        await scheduler.start_new("HelloDurable", instance_id="id-1")

    await scheduler.drain()
    with pytest.raises(InstanceConflict):
        await scheduler.start_new("HelloDurable", instance_id="id-1")
    assert len(await scheduler.list_instances()) == 1


@pytest.mark.asyncio
async def test_start_new_rejects_unknown_orchestrator():
    scheduler = _scheduler()
    with pytest.raises(OrchestratorNotFound):
        await scheduler.start_new("Missing", instance_id="id-1")
    assert await scheduler.list_instances() == []


@pytest.mark.asyncio
async def test_completions_in_any_order_produce_ordered_output():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurable", instance_id="id-1")
    await scheduler.drain()
    execution_id = (await scheduler.get_status("id-1")).execution_id

    for seq, city in [(2, "London"), (0, "Tokyo"), (1, "Seattle")]:
        recorded = await scheduler.raise_activity_completion(
            "id-1", seq, result={"name": city}, execution_id=execution_id
        )
        assert recorded
    await scheduler.drain()

    instance = await scheduler.get_status("id-1")
    assert instance.status is OrchestrationStatus.COMPLETED
    assert instance.output == [{"name": "Tokyo"}, {"name": "Seattle"}, {"name": "London"}]
    assert instance.history[-1].type == "OrchestratorCompleted"
    assert not scheduler.is_in_flight("id-1", execution_id, 0)


@pytest.mark.asyncio
async def test_duplicate_stale_and_unknown_completions_are_ignored():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurableSequential", instance_id="id-1")
    await scheduler.drain()
    execution_id = (await scheduler.get_status("id-1")).execution_id

    assert await scheduler.raise_activity_completion("id-1", 0, result="a", execution_id=execution_id)
    await scheduler.drain()
    assert not await scheduler.raise_activity_completion("id-1", 0, result="again")
    assert not await scheduler.raise_activity_completion("id-1", 7, result="never scheduled")
    assert not await scheduler.raise_activity_completion("id-1", 1, result="b", execution_id="old")
    assert not await scheduler.raise_activity_completion("missing", 0, result="x")

    instance = await scheduler.get_status("id-1")
    completed = [e for e in instance.history if e.type == "ActivityCompleted"]
    assert [(e.sequence_number, e.result) for e in completed] == [(0, "a")]
    assert [a.sequence_number for a in instance.pending_activities()] == [1]


@pytest.mark.asyncio
async def test_failed_activity_fails_orchestration():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurable", instance_id="id-1")
    await scheduler.drain()

    await scheduler.raise_activity_completion(
        "id-1", 1, error=ErrorDetails(type="ValueError", message="bad city")
    )

    instance = await scheduler.get_status("id-1")
    assert instance.status is OrchestrationStatus.FAILED
    assert instance.error.type == "ActivityFailedError"
    assert "bad city" in instance.error.message
    # Late completions of the siblings do not resurrect the instance.
    assert not await scheduler.raise_activity_completion("id-1", 0, result="late")


@pytest.mark.asyncio
async def test_recover_skips_in_flight_and_redispatches_after_restart():
    store = InMemoryInstanceStore()
    first = _scheduler(store=store)
    await first.start_new("HelloDurable", instance_id="id-1")
    await first.drain()
    assert first.transport.pending(ACTIVITY_TOPIC) == 3

    assert await first.recover() == 1
    assert first.transport.pending(ACTIVITY_TOPIC) == 3

    # A new process over the same store has nothing in flight.
    second = _scheduler(store=store)
    assert await second.recover() == 1
    assert second.transport.pending(ACTIVITY_TOPIC) == 3
    assert len((await store.get_instance("id-1")).scheduled_activities()) == 3


@pytest.mark.asyncio
async def test_recover_advances_instances_that_never_replayed():
    store = InMemoryInstanceStore()
    started = OrchestratorStarted(execution_id="exec-1", name="HelloDurable", input=["Oslo"])
    await store.create_instance("id-1", "HelloDurable", started)

    scheduler = _scheduler(store=store)
    await scheduler.recover()
    await scheduler.drain()

    instance = await store.get_instance("id-1")
    assert instance.status is OrchestrationStatus.RUNNING
    assert [a.input for a in instance.pending_activities()] == [{"cityName": "Oslo"}]
    assert scheduler.transport.pending(ACTIVITY_TOPIC) == 1


@pytest.mark.asyncio
async def test_dispatch_retries_transient_publish_failures(monkeypatch):
    monkeypatch.setattr("durafaas.transports.base.schedule_retry", _no_wait)
    transport = FlakyTransport(failures=2)
    scheduler = _scheduler(transport=transport, dispatch_max_attempts=5)

    await scheduler.start_new("HelloDurable", instance_id="id-1", input=["Oslo"])
    await scheduler.drain()

    assert transport.attempts == 3
    assert transport.pending(ACTIVITY_TOPIC) == 1
    assert (await scheduler.get_status("id-1")).status is OrchestrationStatus.RUNNING


@pytest.mark.asyncio
async def test_exhausted_dispatch_records_transient_failure(monkeypatch):
    monkeypatch.setattr("durafaas.transports.base.schedule_retry", _no_wait)
    transport = FlakyTransport(failures=100)
    scheduler = _scheduler(transport=transport, dispatch_max_attempts=2)

    await scheduler.start_new("HelloDurable", instance_id="id-1", input=["Oslo"])
    await scheduler.drain()

    instance = await scheduler.get_status("id-1")
    failures = [e for e in instance.history if isinstance(e, ActivityFailed)]
    assert transport.attempts == 2
    assert [f.error.type for f in failures] == ["TransientDispatchFailure"]
    assert instance.status is OrchestrationStatus.FAILED
    assert "TransientDispatchFailure" in instance.error.message
    assert not scheduler.is_in_flight("id-1", instance.execution_id, 0)


@pytest.mark.asyncio
async def test_wait_for_completion_times_out():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurable", instance_id="id-1")

    with pytest.raises(OrchestrationTimeout) as exc_info:
        await scheduler.wait_for_completion("id-1", timeout=0.1, initial_interval=0.01)
    assert exc_info.value.instance_id == "id-1"

    with pytest.raises(InstanceNotFound):
        await scheduler.wait_for_completion("missing", timeout=0.1)


@pytest.mark.asyncio
async def test_terminate_stops_active_instance():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurable", instance_id="id-1")
    await scheduler.drain()

    assert await scheduler.terminate("id-1", reason="operator request")
    assert not await scheduler.terminate("id-1")
    assert not await scheduler.raise_activity_completion("id-1", 0, result="late")

    instance = await scheduler.get_status("id-1")
    assert instance.status is OrchestrationStatus.TERMINATED
    assert instance.history[-1].reason == "operator request"

    with pytest.raises(InstanceNotFound):
        await scheduler.terminate("missing")

    # A terminated ID can be started again.
    await scheduler.start_new("HelloDurable", instance_id="id-1")


@pytest.mark.asyncio
async def test_external_event_resumes_waiting_orchestrator():
    registry = FunctionRegistry()

    @registry.orchestrator("Approval")
    def approval(context):
        decision = yield context.wait_for_external_event("Approved")
        return {"approved": decision}

    scheduler = _scheduler(registry=registry)
    await scheduler.start_new("Approval", instance_id="a-1")
    await scheduler.drain()
    assert (await scheduler.get_status("a-1")).status is OrchestrationStatus.RUNNING

    assert await scheduler.raise_event("a-1", "Approved", True)

    instance = await scheduler.get_status("a-1")
    assert instance.status is OrchestrationStatus.COMPLETED
    assert instance.output == {"approved": True}
    assert not await scheduler.raise_event("a-1", "Approved", False)


@pytest.mark.asyncio
async def test_continue_as_new_restarts_with_fresh_history():
    registry = FunctionRegistry()

    @registry.orchestrator("Counter")
    def counter(context):
        count = context.get_input()
        if count < 2:
            context.continue_as_new(count + 1)
        return count

    scheduler = _scheduler(registry=registry)
    await scheduler.start_new("Counter", instance_id="c-1", input=0)
    await scheduler.drain()

    instance = await scheduler.get_status("c-1")
    assert instance.status is OrchestrationStatus.COMPLETED
    assert instance.output == 2
    assert instance.input == 2
    starts = [e for e in instance.history if isinstance(e, OrchestratorStarted)]
    assert len(starts) == 3
    assert len({e.execution_id for e in starts}) == 3


@pytest.mark.asyncio
async def test_concurrent_starts_of_one_id_create_a_single_history(tmp_path):
    from durafaas.persistence import SQLiteInstanceStore

    for store in (InMemoryInstanceStore(), SQLiteInstanceStore(tmp_path / "race.db")):
        scheduler = _scheduler(store=store)
        results = await asyncio.gather(
            scheduler.start_new("HelloDurable", instance_id="id-1"),
            scheduler.start_new("HelloDurable", instance_id="id-1"),
            return_exceptions=True,
        )
        await scheduler.drain()

        assert sorted(type(r).__name__ for r in results) == ["InstanceConflict", "str"]
        instance = await store.get_instance("id-1")
        starts = [e for e in instance.history if isinstance(e, OrchestratorStarted)]
        assert len(starts) == 1
        assert len(instance.scheduled_activities()) == 3


@pytest.mark.asyncio
async def test_calls_reached_by_a_finished_pass_are_not_dispatched():
    registry = FunctionRegistry()

    @registry.orchestrator("FireAndReturn")
    def fire_and_return(context):
        context.call_activity("Never")
        return "done"

    scheduler = _scheduler(registry=registry)
    await scheduler.start_new("FireAndReturn", instance_id="f-1")
    await scheduler.drain()

    instance = await scheduler.get_status("f-1")
    assert instance.status is OrchestrationStatus.COMPLETED
    assert scheduler.transport.pending(ACTIVITY_TOPIC) == 0
    assert not scheduler.is_in_flight("f-1", instance.execution_id, 0)


@pytest.mark.asyncio
async def test_instance_locks_are_released_when_idle():
    scheduler = _scheduler()
    await scheduler.start_new("HelloDurableSequential", instance_id="id-1", input=["Oslo"])
    await scheduler.drain()
    assert scheduler._locks == {}

    await scheduler.raise_activity_completion("id-1", 0, result="o")
    await scheduler.terminate("id-1")
    await scheduler.drain()
    assert scheduler._locks == {}


@pytest.mark.asyncio
async def test_crashed_service_is_logged(caplog):
    scheduler = _scheduler()

    async def broken():
        raise RuntimeError("consumer died")

    with caplog.at_level("ERROR", logger="durafaas.scheduler"):
        scheduler._run_service(broken(), "completions")
        await asyncio.gather(*scheduler._services, return_exceptions=True)
        await asyncio.sleep(0)

    assert "Scheduler service completions crashed" in caplog.text
    assert "consumer died" in caplog.text
