# underwriting_engine/services/scheduler.py

import asyncio
import logging
import threading
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from underwriting_engine.core.config import settings
from underwriting_engine.core.errors import InvalidInput, TaskTimeout
from underwriting_engine.schemas.audit import AuditEvent, AuditEventType
from underwriting_engine.schemas.transaction import TransactionProfile
from underwriting_engine.schemas.workflow import (
    AutomationStatus,
    TaskAutomationResult,
    TaskStatus,
    UnderwritingTask,
    WorkflowRunResult,
)
from underwriting_engine.services.audit import AuditSink, emit_audit_event
from underwriting_engine.services.task_executor import TaskExecutor
from underwriting_engine.services.task_graph import validate_task_graph
from underwriting_engine.services.task_store import TaskStore

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Retries for failed automated tasks. The default is a single attempt."""
    max_retries: int = Field(default=0, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0.0)

    def delay(self, attempt: int) -> float:
        # Exponential backoff: 1x, 2x, 4x...
        return self.backoff_seconds * (2 ** (attempt - 1))


class RunControl:
    """
    External handle on a running workflow: cancellation and human task completions.
    Both signals may be sent from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._finished = False
        self._queued: List[str] = []
        self._store: Optional[TaskStore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup = asyncio.Event()
        self.human_completed: List[str] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop dispatching new tasks. In-flight tasks are allowed to finish."""
        self._cancelled = True
        self._notify()

    def complete_human_task(self, task_id: str) -> None:
        """Mark a human-assigned task completed, unblocking its dependents."""
        with self._lock:
            if self._finished:
                raise InvalidInput("Workflow run has already finished")
            if self._store is None:
                self._queued.append(task_id)
                return
            self._complete(task_id)
        self._notify()

    def _bind(self, store: TaskStore) -> None:
        with self._lock:
            self._store = store
            self._loop = asyncio.get_running_loop()
            self._wakeup = asyncio.Event()
            queued, self._queued = self._queued, []
            for task_id in queued:
                self._complete(task_id)

    def _complete(self, task_id: str) -> None:
        try:
            task = self._store.get(task_id)
        except KeyError:
            raise InvalidInput(f"Unknown task id: {task_id}") from None
        if task.is_automatable:
            raise InvalidInput(f"Task {task_id} is automated and cannot be completed externally")
        self._store.apply(task_id, TaskStatus.COMPLETED)
        self.human_completed.append(task_id)
        logger.info("👤 Human task %s marked completed", task_id)

    def _finish(self) -> None:
        with self._lock:
            self._finished = True

    def _notify(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    async def _wait(self) -> None:
        await self._wakeup.wait()


class DependencyScheduler:
    """
    Runs the automatable part of a task graph in dependency order.

    Ready tasks are dispatched concurrently, at most `concurrency_limit`
    at a time. A failed task blocks everything downstream of it; tasks
    that can never start are reported as requires_human instead of
    being waited on.
    """

    def __init__(
        self,
        executor: Optional[TaskExecutor] = None,
        audit_sink: Optional[AuditSink] = None,
        task_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        review_threshold: Optional[float] = None,
    ):
        self.executor = executor or TaskExecutor()
        self.audit_sink = audit_sink
        self.task_timeout = settings.TASK_TIMEOUT_SECONDS if task_timeout is None else task_timeout
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.MAX_TASK_RETRIES,
            backoff_seconds=settings.RETRY_BACKOFF_SECONDS,
        )
        self.review_threshold = (
            settings.REVIEW_CONFIDENCE_THRESHOLD if review_threshold is None else review_threshold
        )

    async def run(
        self,
        tasks: List[UnderwritingTask],
        transaction: TransactionProfile,
        concurrency_limit: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        control: Optional[RunControl] = None,
    ) -> WorkflowRunResult:
        """
        Execute every reachable automatable task once.

        Raises:
            GraphInvariantViolation: the task set is not a valid DAG. Nothing runs.
            InvalidInput: bad concurrency limit or task starting state.
        """
        validate_task_graph(tasks)

        limit = settings.MAX_CONCURRENCY if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise InvalidInput("concurrency_limit must be at least 1")

        store = TaskStore(tasks)
        control = control or RunControl()

        loop = asyncio.get_running_loop()
        deadline_at = None if deadline_seconds is None else loop.time() + deadline_seconds

        results: Dict[str, TaskAutomationResult] = {}
        in_flight: Dict[asyncio.Task, str] = {}
        dispatch_order: List[str] = []
        timed_out = False

        try:
            control._bind(store)

            logger.info("🚀 WORKFLOW STARTED: %s (%d tasks, concurrency %d)", transaction.id, len(tasks), limit)
            self._audit(AuditEventType.WORKFLOW_STARTED, transaction, payload={
                "task_count": len(tasks),
                "concurrency_limit": limit,
            })

            while True:
                control._wakeup.clear()
                if control.cancelled:
                    break
                if deadline_at is not None and loop.time() >= deadline_at:
                    timed_out = True
                    break

                for task in store.take_ready(limit - len(in_flight)):
                    dispatch_order.append(task.id)
                    self._audit(AuditEventType.TASK_STARTED, transaction, task_id=task.id)
                    logger.info("⚙️  Dispatching %s: %s", task.id, task.title)
                    attempt = self._attempt(task, transaction, control, deadline_at)
                    in_flight[asyncio.create_task(attempt)] = task.id

                if not in_flight:
                    if store.has_ready():
                        continue  # A human completion landed during dispatch
                    break  # Quiescent: nothing running and nothing can start

                waiter = asyncio.create_task(control._wait())
                timeout = None if deadline_at is None else max(0.0, deadline_at - loop.time())
                try:
                    done, _ = await asyncio.wait(
                        [*in_flight, waiter], timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    waiter.cancel()

                for finished in done:
                    if finished is waiter:
                        continue
                    in_flight.pop(finished)
                    self._record(store, transaction, finished.result(), results)

            # Let in-flight executions finish; nothing new is dispatched
            if in_flight:
                for finished in await asyncio.gather(*in_flight):
                    self._record(store, transaction, finished, results)
        finally:
            control._finish()

        partial = control.cancelled or timed_out
        external = {t.id: "Completed before this run" for t in tasks if t.status == TaskStatus.COMPLETED}
        external.update({task_id: "Completed by human reviewer" for task_id in control.human_completed})
        for task_id, notes in external.items():
            results[task_id] = TaskAutomationResult(
                task_id=task_id,
                status=AutomationStatus.COMPLETED,
                confidence=1.0,
                notes=notes,
            )

        if partial:
            reason = "cancelled" if control.cancelled else "deadline exceeded"
            logger.warning("🛑 WORKFLOW STOPPED (%s): %d/%d tasks reached a terminal state",
                           reason, len(results), len(tasks))
            self._audit(AuditEventType.WORKFLOW_CANCELLED, transaction, payload={
                "reason": reason,
                "terminal_tasks": sorted(results),
            })
        else:
            self._report_unreachable(store, results)
            logger.info("✅ WORKFLOW SETTLED: %s", transaction.id)

        return WorkflowRunResult(
            results=results,
            partial=partial,
            cancelled=control.cancelled,
            timed_out=timed_out,
            task_statuses=store.statuses(),
            dispatch_order=dispatch_order,
        )

    async def _attempt(
        self,
        task: UnderwritingTask,
        transaction: TransactionProfile,
        control: RunControl,
        deadline_at: Optional[float] = None,
    ) -> TaskAutomationResult:
        loop = asyncio.get_running_loop()
        attempts = 0
        while True:
            attempts += 1
            result = await self._execute_once(task, transaction)
            if result.status != AutomationStatus.FAILED or attempts > self.retry_policy.max_retries:
                break
            delay = self.retry_policy.delay(attempts)
            if control.cancelled or (deadline_at is not None and loop.time() + delay >= deadline_at):
                logger.info("🛑 Not retrying %s: run is stopping", task.id)
                break
            logger.info("🔁 Retrying %s in %.1fs (attempt %d failed)", task.id, delay, attempts)
            await asyncio.sleep(delay)
            if control.cancelled:
                break
        return result.model_copy(update={"attempts": attempts})

    async def _execute_once(self, task: UnderwritingTask, transaction: TransactionProfile) -> TaskAutomationResult:
        try:
            return await asyncio.wait_for(
                self.executor.execute(task, transaction), timeout=self.task_timeout
            )
        except asyncio.TimeoutError:
            error = TaskTimeout(task.id, self.task_timeout)
            logger.warning("⏱️  %s", error)
            return TaskAutomationResult(
                task_id=task.id,
                status=AutomationStatus.FAILED,
                duration=self.task_timeout,
                confidence=0.0,
                notes=f"Timeout: {error}",
            )
        except Exception as e:
            # Executors report failures as results; an exception here is still only this task's failure
            logger.exception("💥 Executor crashed on %s", task.id)
            return TaskAutomationResult(
                task_id=task.id,
                status=AutomationStatus.FAILED,
                confidence=0.0,
                notes=f"Automation failed: {e}",
            )

    def _record(
        self,
        store: TaskStore,
        transaction: TransactionProfile,
        result: TaskAutomationResult,
        results: Dict[str, TaskAutomationResult],
    ) -> None:
        task_id = result.task_id

        if result.status == AutomationStatus.COMPLETED and result.confidence < self.review_threshold:
            store.apply(task_id, TaskStatus.REQUIRES_REVIEW)
            result = result.model_copy(update={
                "status": AutomationStatus.REQUIRES_HUMAN,
                "notes": f"{result.notes} (confidence {result.confidence:.2f} below review threshold)",
            })
            logger.info("👀 %s parked for review (confidence %.2f)", task_id, result.confidence)
        elif result.status == AutomationStatus.COMPLETED:
            promoted = store.apply(task_id, TaskStatus.COMPLETED)
            logger.info("   ✅ %s completed (confidence: %.2f)%s", task_id, result.confidence,
                        f", unlocked {', '.join(promoted)}" if promoted else "")
        elif result.status == AutomationStatus.FAILED:
            blocked = store.apply(task_id, TaskStatus.FAILED)
            logger.warning("   ❌ %s failed: %s%s", task_id, result.notes,
                           f"; blocked {', '.join(blocked)}" if blocked else "")
        else:
            store.apply(task_id, TaskStatus.REQUIRES_REVIEW)

        results[task_id] = result

        event_type = (
            AuditEventType.TASK_FAILED if result.status == AutomationStatus.FAILED
            else AuditEventType.TASK_COMPLETED
        )
        self._audit(event_type, transaction, task_id=task_id, payload={
            "status": result.status.value,
            "confidence": result.confidence,
            "duration": result.duration,
            "attempts": result.attempts,
            "notes": result.notes,
        })

    def _report_unreachable(self, store: TaskStore, results: Dict[str, TaskAutomationResult]) -> None:
        """Every task that never ran is handed to a human rather than waited on."""
        for task in store.tasks():
            if task.id in results:
                continue
            if task.status == TaskStatus.BLOCKED:
                notes = "Blocked by a failed prerequisite"
            elif task.is_automatable:
                waiting = [
                    dep_id for dep_id in task.dependencies
                    if store.get(dep_id).status != TaskStatus.COMPLETED
                ]
                notes = f"Waiting on prerequisites: {', '.join(waiting)}"
            else:
                notes = "Awaiting human completion"
            results[task.id] = TaskAutomationResult(
                task_id=task.id,
                status=AutomationStatus.REQUIRES_HUMAN,
                notes=notes,
            )

    def _audit(
        self,
        event_type: AuditEventType,
        transaction: TransactionProfile,
        task_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> None:
        emit_audit_event(self.audit_sink, AuditEvent(
            event_type=event_type,
            transaction_id=transaction.id,
            task_id=task_id,
            payload=payload or {},
        ))
