# tests/test_task_store.py

import pytest

from underwriting_engine.core.errors import InvalidInput, InvalidTransition
from underwriting_engine.schemas.workflow import TaskStatus
from underwriting_engine.services.task_graph import TaskGraphBuilder
from underwriting_engine.services.task_store import TaskStore


@pytest.fixture
def store(make_transaction):
    return TaskStore(TaskGraphBuilder().build(make_transaction()))


def test_only_unblocked_automatable_tasks_start_ready(store):
    claimed = [t.id for t in store.take_ready()]

    # Collateral and equipment valuation are human tasks; UCC search has no prerequisites
    assert claimed == ["UW-DOC-001", "UW-COM-001", "UW-EQP-002"]
    assert all(store.get(task_id).status == TaskStatus.IN_PROGRESS for task_id in claimed)
    assert not store.has_ready()


def test_take_ready_respects_limit(store):
    assert [t.id for t in store.take_ready(1)] == ["UW-DOC-001"]
    assert store.has_ready()
    assert store.take_ready(0) == []


def test_completion_promotes_dependents(store):
    store.take_ready()
    promoted = store.apply("UW-DOC-001", TaskStatus.COMPLETED)

    assert promoted == ["UW-VER-001", "UW-VER-002"]
    assert [t.id for t in store.take_ready()] == ["UW-VER-001", "UW-VER-002"]


def test_task_waits_for_every_prerequisite(store):
    store.take_ready()
    store.apply("UW-DOC-001", TaskStatus.COMPLETED)
    store.take_ready()
    store.apply("UW-VER-001", TaskStatus.COMPLETED)

    assert "UW-RISK-001" not in [t.id for t in store.take_ready()]
    assert store.get("UW-RISK-001").status == TaskStatus.PENDING


def test_failure_blocks_everything_downstream(store):
    store.take_ready()
    store.apply("UW-DOC-001", TaskStatus.COMPLETED)
    store.take_ready()
    blocked = store.apply("UW-VER-002", TaskStatus.FAILED)

    assert set(blocked) == {"UW-ANA-001", "UW-RISK-001", "UW-DEC-001"}
    statuses = store.statuses()
    assert statuses["UW-VER-002"] == TaskStatus.FAILED
    assert all(statuses[task_id] == TaskStatus.BLOCKED for task_id in blocked)
    assert statuses["UW-VER-001"] == TaskStatus.IN_PROGRESS


def test_illegal_transition_raises(store):
    store.take_ready()
    store.apply("UW-DOC-001", TaskStatus.COMPLETED)

    with pytest.raises(InvalidTransition) as exc_info:
        store.apply("UW-DOC-001", TaskStatus.IN_PROGRESS)
    assert exc_info.value.task_id == "UW-DOC-001"

    with pytest.raises(InvalidTransition):
        store.apply("UW-DEC-001", TaskStatus.FAILED)


def test_human_completion_satisfies_dependents(make_task):
    store = TaskStore([make_task("H", human=True), make_task("A", dependencies=["H"])])
    assert store.take_ready() == []

    assert store.apply("H", TaskStatus.COMPLETED) == ["A"]
    assert [t.id for t in store.take_ready()] == ["A"]


def test_pre_completed_tasks_count_as_satisfied(make_task):
    store = TaskStore([
        make_task("A", status=TaskStatus.COMPLETED),
        make_task("B", dependencies=["A"]),
    ])
    assert [t.id for t in store.take_ready()] == ["B"]


def test_tasks_must_start_pending_or_completed(make_task):
    with pytest.raises(InvalidInput, match="must start pending or completed"):
        TaskStore([make_task("A", status=TaskStatus.FAILED)])


def test_unknown_task_id_is_invalid_input(store):
    with pytest.raises(InvalidInput):
        store.apply("UW-NOPE-999", TaskStatus.COMPLETED)


def test_store_does_not_mutate_caller_tasks(make_task):
    tasks = [make_task("A")]
    store = TaskStore(tasks)
    store.take_ready()

    assert tasks[0].status == TaskStatus.PENDING
