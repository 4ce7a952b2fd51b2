"""Tests for the in-memory and SQLite instance stores."""

import pytest

from durafaas.contracts import ErrorDetails
from durafaas.errors import InstanceConflict, InstanceNotFound
from durafaas.persistence import (
    ActivityCompleted,
    ActivityScheduled,
    InMemoryInstanceStore,
    OrchestrationStatus,
    OrchestratorContinuedAsNew,
    OrchestratorStarted,
    SQLiteInstanceStore,
    get_store,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryInstanceStore()
    return SQLiteInstanceStore(tmp_path / "instances.db")


def _started(input=None, execution_id="exec-1"):
    return OrchestratorStarted(execution_id=execution_id, name="HelloDurable", input=input)


@pytest.mark.asyncio
async def test_create_and_get_instance(store):
    created = await store.create_instance("id-1", "HelloDurable", _started(["Tokyo"]))
    assert created.status is OrchestrationStatus.PENDING

    loaded = await store.get_instance("id-1")
    assert loaded.name == "HelloDurable"
    assert loaded.input == ["Tokyo"]
    assert loaded.execution_id == "exec-1"
    assert [e.type for e in loaded.history] == ["OrchestratorStarted"]
    assert await store.get_instance("missing") is None


@pytest.mark.asyncio
async def test_create_conflicts_with_active_instance(store):
    await store.create_instance("id-1", "HelloDurable", _started())
    await store.append_events("id-1", [], status=OrchestrationStatus.RUNNING)

    with pytest.raises(InstanceConflict) as exc_info:
        await store.create_instance("id-1", "HelloDurable", _started())
    assert exc_info.value.status == "Running"

    loaded = await store.get_instance("id-1")
    assert len(loaded.history) == 1


@pytest.mark.asyncio
async def test_create_replaces_finished_instance(store):
    await store.create_instance("id-1", "HelloDurable", _started(["Tokyo"]))
    await store.append_events(
        "id-1", [], status=OrchestrationStatus.COMPLETED, output=["done"]
    )

    await store.create_instance("id-1", "HelloDurable", _started(["Oslo"], "exec-2"))

    loaded = await store.get_instance("id-1")
    assert loaded.status is OrchestrationStatus.PENDING
    assert loaded.input == ["Oslo"]
    assert loaded.output is None
    assert loaded.execution_id == "exec-2"
    assert len(loaded.history) == 1


@pytest.mark.asyncio
async def test_append_events_keeps_order_and_updates_fields(store):
    await store.create_instance("id-1", "HelloDurable", _started())
    await store.append_events(
        "id-1",
        [
            ActivityScheduled(name="A", input={"x": 1}, sequence_number=0),
            ActivityScheduled(name="B", sequence_number=1),
        ],
        status=OrchestrationStatus.RUNNING,
    )
    await store.append_events("id-1", [ActivityCompleted(sequence_number=1, result="b")])

    loaded = await store.get_instance("id-1")
    assert loaded.status is OrchestrationStatus.RUNNING
    assert [e.type for e in loaded.history] == [
        "OrchestratorStarted",
        "ActivityScheduled",
        "ActivityScheduled",
        "ActivityCompleted",
    ]
    assert loaded.history[1].input == {"x": 1}
    assert [a.sequence_number for a in loaded.pending_activities()] == [0]
    assert loaded.last_updated_at >= loaded.created_at

    error = ErrorDetails(type="ValueError", message="boom")
    await store.append_events("id-1", [], status=OrchestrationStatus.FAILED, error=error)
    failed = await store.get_instance("id-1")
    assert failed.error == error


@pytest.mark.asyncio
async def test_continued_as_new_updates_input_and_execution(store):
    await store.create_instance("id-1", "Counter", _started(0))
    await store.append_events(
        "id-1",
        [OrchestratorContinuedAsNew(input=1), _started(1, "exec-2")],
        status=OrchestrationStatus.CONTINUED_AS_NEW,
    )

    loaded = await store.get_instance("id-1")
    assert loaded.input == 1
    assert loaded.execution_id == "exec-2"
    assert len(loaded.current_execution()) == 1


@pytest.mark.asyncio
async def test_append_to_missing_instance_raises(store):
    with pytest.raises(InstanceNotFound):
        await store.append_events("missing", [ActivityCompleted(sequence_number=0)])


@pytest.mark.asyncio
async def test_list_instances_filters_by_status(store):
    await store.create_instance("a", "HelloDurable", _started())
    await store.create_instance("b", "HelloDurable", _started())
    await store.append_events("b", [], status=OrchestrationStatus.COMPLETED)

    assert {i.instance_id for i in await store.list_instances()} == {"a", "b"}
    completed = await store.list_instances(OrchestrationStatus.COMPLETED)
    assert [i.instance_id for i in completed] == ["b"]


@pytest.mark.asyncio
async def test_returned_instances_are_snapshots(store):
    await store.create_instance("id-1", "HelloDurable", _started())
    loaded = await store.get_instance("id-1")
    loaded.history.append(ActivityCompleted(sequence_number=0))

    assert len((await store.get_instance("id-1")).history) == 1


@pytest.mark.asyncio
async def test_sqlite_store_survives_reopen(tmp_path):
    db_path = tmp_path / "instances.db"
    store = SQLiteInstanceStore(db_path)
    await store.create_instance("id-1", "HelloDurable", _started(["Tokyo"]))
    await store.append_events(
        "id-1",
        [ActivityScheduled(name="HelloDurable_Hello", sequence_number=0)],
        status=OrchestrationStatus.RUNNING,
    )
    await store.close()

    reopened = SQLiteInstanceStore(db_path)
    loaded = await reopened.get_instance("id-1")
    assert loaded.status is OrchestrationStatus.RUNNING
    assert isinstance(loaded.history[1], ActivityScheduled)
    assert loaded.history[0].timestamp.tzinfo is not None
    await reopened.close()


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("DURAFAAS_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DURAFAAS_CONFIG", str(tmp_path / "missing.yaml"))

    assert isinstance(get_store(), InMemoryInstanceStore)
    assert isinstance(get_store(f"sqlite://{tmp_path / 'a.db'}"), SQLiteInstanceStore)

    monkeypatch.setenv("DURAFAAS_DATABASE_URL", f"sqlite://{tmp_path / 'b.db'}")
    assert isinstance(get_store(), SQLiteInstanceStore)

    with pytest.raises(ValueError):
        get_store("mysql://localhost/db")
