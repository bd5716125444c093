# tests/test_scheduler.py

import asyncio

import pytest

from underwriting_engine.core.errors import GraphInvariantViolation, InvalidInput
from underwriting_engine.schemas.transaction import LoanType
from underwriting_engine.schemas.workflow import AutomationStatus, TaskStatus
from underwriting_engine.services.audit import InMemoryAuditSink
from underwriting_engine.services.scheduler import DependencyScheduler, RetryPolicy, RunControl
from underwriting_engine.services.task_graph import TaskGraphBuilder


@pytest.fixture
def base_tasks(make_transaction):
    return TaskGraphBuilder().build(make_transaction(type=LoanType.WORKING_CAPITAL))


@pytest.mark.asyncio
async def test_tasks_run_after_their_prerequisites(base_tasks, make_transaction, scripted_executor):
    executor = scripted_executor(delays={"UW-DOC-001": 0.01, "UW-VER-002": 0.02})
    run = await DependencyScheduler(executor=executor).run(base_tasks, make_transaction())

    for task in base_tasks:
        for dep_id in task.dependencies:
            if task.is_automatable:
                assert executor.log.index(("end", dep_id)) < executor.log.index(("start", task.id))

    assert run.partial is False
    assert run.dispatch_order == executor.calls


@pytest.mark.asyncio
async def test_settled_run_reports_every_task(base_tasks, make_transaction, scripted_executor):
    run = await DependencyScheduler(executor=scripted_executor()).run(base_tasks, make_transaction())

    assert set(run.results) == {t.id for t in base_tasks}
    automated = [r for r in run.results.values() if r.task_id != "UW-COL-001"]
    assert all(r.status == AutomationStatus.COMPLETED for r in automated)
    assert all(r.attempts == 1 for r in automated)

    collateral = run.results["UW-COL-001"]
    assert collateral.status == AutomationStatus.REQUIRES_HUMAN
    assert collateral.notes == "Awaiting human completion"
    assert run.task_statuses["UW-COL-001"] == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(make_task, make_transaction, scripted_executor):
    tasks = [make_task(f"T{i}") for i in range(6)]
    executor = scripted_executor(delays={t.id: 0.02 for t in tasks})

    await DependencyScheduler(executor=executor).run(tasks, make_transaction(), concurrency_limit=2)
    assert executor.peak == 2
    assert sorted(executor.calls) == sorted(t.id for t in tasks)


@pytest.mark.asyncio
async def test_independent_tasks_run_concurrently(make_task, make_transaction, scripted_executor):
    tasks = [make_task(f"T{i}") for i in range(6)]
    executor = scripted_executor(delays={t.id: 0.02 for t in tasks})

    await DependencyScheduler(executor=executor).run(tasks, make_transaction(), concurrency_limit=6)
    assert executor.peak == 6


@pytest.mark.asyncio
async def test_concurrency_limit_must_be_positive(base_tasks, make_transaction, scripted_executor):
    with pytest.raises(InvalidInput):
        await DependencyScheduler(executor=scripted_executor()).run(
            base_tasks, make_transaction(), concurrency_limit=0
        )


@pytest.mark.asyncio
async def test_cyclic_graph_never_runs(make_task, make_transaction, scripted_executor):
    executor = scripted_executor()
    tasks = [make_task("A", dependencies=["B"]), make_task("B", dependencies=["A"]), make_task("C")]

    with pytest.raises(GraphInvariantViolation):
        await DependencyScheduler(executor=executor).run(tasks, make_transaction())
    assert executor.calls == []


@pytest.mark.asyncio
async def test_failure_blocks_dependents(base_tasks, make_transaction, scripted_executor):
    executor = scripted_executor(outcomes={"UW-VER-002": (AutomationStatus.FAILED, 0.0)})
    run = await DependencyScheduler(executor=executor).run(base_tasks, make_transaction())

    assert run.results["UW-VER-002"].status == AutomationStatus.FAILED
    for task_id in ("UW-ANA-001", "UW-RISK-001", "UW-DEC-001"):
        assert run.task_statuses[task_id] == TaskStatus.BLOCKED
        assert run.results[task_id].status == AutomationStatus.REQUIRES_HUMAN
        assert run.results[task_id].notes == "Blocked by a failed prerequisite"
        assert task_id not in executor.calls

    # Independent branches still finish
    assert run.results["UW-VER-001"].status == AutomationStatus.COMPLETED
    assert run.results["UW-COM-001"].status == AutomationStatus.COMPLETED


@pytest.mark.asyncio
async def test_executor_exception_fails_only_that_task(base_tasks, make_transaction, scripted_executor):
    executor = scripted_executor(outcomes={"UW-COM-001": RuntimeError("screening service crashed")})
    run = await DependencyScheduler(executor=executor).run(base_tasks, make_transaction())

    assert run.results["UW-COM-001"].status == AutomationStatus.FAILED
    assert "screening service crashed" in run.results["UW-COM-001"].notes
    assert run.results["UW-RISK-001"].status == AutomationStatus.COMPLETED
    assert run.task_statuses["UW-DEC-001"] == TaskStatus.BLOCKED


@pytest.mark.asyncio
async def test_task_timeout_is_a_failure(base_tasks, make_transaction, scripted_executor):
    executor = scripted_executor(delays={"UW-DOC-001": 5})
    run = await DependencyScheduler(executor=executor, task_timeout=0.05).run(base_tasks, make_transaction())

    result = run.results["UW-DOC-001"]
    assert result.status == AutomationStatus.FAILED
    assert "timed out" in result.notes
    assert result.confidence == 0.0
    assert run.task_statuses["UW-VER-001"] == TaskStatus.BLOCKED


@pytest.mark.asyncio
async def test_failed_tasks_are_not_retried_by_default(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(fail_times={"A": 1})
    run = await DependencyScheduler(executor=executor).run([make_task("A")], make_transaction())

    assert executor.calls == ["A"]
    assert run.results["A"].status == AutomationStatus.FAILED


@pytest.mark.asyncio
async def test_retry_policy_retries_failed_tasks(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(fail_times={"A": 2})
    scheduler = DependencyScheduler(
        executor=executor,
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0),
    )
    run = await scheduler.run([make_task("A")], make_transaction())

    assert executor.calls == ["A", "A", "A"]
    assert run.results["A"].status == AutomationStatus.COMPLETED
    assert run.results["A"].attempts == 3


@pytest.mark.asyncio
async def test_cancel_stops_pending_retries(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(fail_times={"A": 10})
    control = RunControl()
    scheduler = DependencyScheduler(
        executor=executor,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.1),
    )

    running = asyncio.create_task(scheduler.run([make_task("A")], make_transaction(), control=control))
    await asyncio.sleep(0.02)
    control.cancel()
    run = await running

    assert executor.calls == ["A"]
    assert run.cancelled is True
    assert run.results["A"].status == AutomationStatus.FAILED
    assert run.results["A"].attempts == 1


@pytest.mark.asyncio
async def test_retries_never_outrun_the_deadline(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(fail_times={"A": 10})
    scheduler = DependencyScheduler(
        executor=executor,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=1.0),
    )
    loop = asyncio.get_running_loop()
    started = loop.time()

    run = await scheduler.run([make_task("A")], make_transaction(), deadline_seconds=0.5)

    assert loop.time() - started < 0.5
    assert executor.calls == ["A"]
    assert run.results["A"].status == AutomationStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_queued_completion_still_finishes_the_control(make_task, make_transaction, scripted_executor):
    control = RunControl()
    control.complete_human_task("ghost")

    with pytest.raises(InvalidInput, match="Unknown task id"):
        await DependencyScheduler(executor=scripted_executor()).run(
            [make_task("A")], make_transaction(), control=control
        )
    with pytest.raises(InvalidInput, match="already finished"):
        control.complete_human_task("A")


def test_retry_backoff_is_exponential():
    policy = RetryPolicy(max_retries=3, backoff_seconds=0.5)
    assert [policy.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_low_confidence_result_goes_to_review(base_tasks, make_transaction, scripted_executor):
    executor = scripted_executor(outcomes={"UW-RISK-001": (AutomationStatus.COMPLETED, 0.3)})
    run = await DependencyScheduler(executor=executor, review_threshold=0.5).run(base_tasks, make_transaction())

    assert run.task_statuses["UW-RISK-001"] == TaskStatus.REQUIRES_REVIEW
    assert run.results["UW-RISK-001"].status == AutomationStatus.REQUIRES_HUMAN
    assert "below review threshold" in run.results["UW-RISK-001"].notes

    assert "UW-DEC-001" not in executor.calls
    assert run.results["UW-DEC-001"].notes == "Waiting on prerequisites: UW-RISK-001"


@pytest.mark.asyncio
async def test_human_completion_before_run_unblocks(make_task, make_transaction, scripted_executor):
    executor = scripted_executor()
    control = RunControl()
    control.complete_human_task("H")

    run = await DependencyScheduler(executor=executor).run(
        [make_task("H", human=True), make_task("A", dependencies=["H"])],
        make_transaction(),
        control=control,
    )

    assert executor.calls == ["A"]
    assert run.results["H"].status == AutomationStatus.COMPLETED
    assert run.results["H"].confidence == 1.0
    assert run.results["H"].notes == "Completed by human reviewer"


@pytest.mark.asyncio
async def test_human_completion_during_run_unblocks(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(delays={"S": 0.2})
    control = RunControl()
    tasks = [make_task("S"), make_task("H", human=True), make_task("A", dependencies=["H"])]

    running = asyncio.create_task(
        DependencyScheduler(executor=executor).run(tasks, make_transaction(), control=control)
    )
    await asyncio.sleep(0.05)
    control.complete_human_task("H")
    run = await running

    assert executor.calls == ["S", "A"]
    assert run.results["A"].status == AutomationStatus.COMPLETED
    assert run.task_statuses["H"] == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_automated_tasks_cannot_be_completed_externally(make_task, make_transaction, scripted_executor):
    control = RunControl()
    control.complete_human_task("A")

    with pytest.raises(InvalidInput, match="cannot be completed externally"):
        await DependencyScheduler(executor=scripted_executor()).run(
            [make_task("A")], make_transaction(), control=control
        )


@pytest.mark.asyncio
async def test_signals_after_the_run_are_rejected(make_task, make_transaction, scripted_executor):
    control = RunControl()
    await DependencyScheduler(executor=scripted_executor()).run(
        [make_task("A"), make_task("H", human=True)], make_transaction(), control=control
    )

    with pytest.raises(InvalidInput, match="already finished"):
        control.complete_human_task("H")


@pytest.mark.asyncio
async def test_cancel_returns_only_terminal_results(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(delays={"A": 0.1})
    control = RunControl()
    sink = InMemoryAuditSink()
    tasks = [make_task("A"), make_task("B", dependencies=["A"]), make_task("H", human=True)]

    running = asyncio.create_task(
        DependencyScheduler(executor=executor, audit_sink=sink).run(tasks, make_transaction(), control=control)
    )
    await asyncio.sleep(0.02)
    control.cancel()
    run = await running

    assert run.partial is True
    assert run.cancelled is True
    # In-flight work is allowed to finish, nothing new starts
    assert set(run.results) == {"A"}
    assert run.results["A"].status == AutomationStatus.COMPLETED
    assert executor.calls == ["A"]
    assert sink.event_types()[-1] == "workflow_cancelled"


@pytest.mark.asyncio
async def test_deadline_stops_dispatch(make_task, make_transaction, scripted_executor):
    executor = scripted_executor(delays={"A": 0.15})
    tasks = [make_task("A"), make_task("B", dependencies=["A"])]

    run = await DependencyScheduler(executor=executor).run(tasks, make_transaction(), deadline_seconds=0.05)

    assert run.partial is True
    assert run.timed_out is True
    assert run.cancelled is False
    assert set(run.results) == {"A"}
    assert run.task_statuses["B"] == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_pre_completed_tasks_are_reported_not_run(make_task, make_transaction, scripted_executor):
    executor = scripted_executor()
    tasks = [make_task("A", status=TaskStatus.COMPLETED), make_task("B", dependencies=["A"])]

    run = await DependencyScheduler(executor=executor).run(tasks, make_transaction())

    assert executor.calls == ["B"]
    assert run.results["A"].notes == "Completed before this run"


@pytest.mark.asyncio
async def test_audit_events_follow_the_run(base_tasks, make_transaction, scripted_executor):
    sink = InMemoryAuditSink()
    await DependencyScheduler(executor=scripted_executor(), audit_sink=sink).run(base_tasks, make_transaction())

    types = sink.event_types()
    assert types[0] == "workflow_started"
    assert types.count("task_started") == 7
    assert types.count("task_completed") == 7
    assert "task_failed" not in types
    assert all(e.transaction_id == "TXN-TEST-001" for e in sink.events)


@pytest.mark.asyncio
async def test_broken_audit_sink_does_not_fail_the_run(base_tasks, make_transaction, scripted_executor, exploding_sink):
    run = await DependencyScheduler(executor=scripted_executor(), audit_sink=exploding_sink).run(
        base_tasks, make_transaction()
    )

    assert exploding_sink.attempts > 0
    assert run.results["UW-DEC-001"].status == AutomationStatus.COMPLETED
