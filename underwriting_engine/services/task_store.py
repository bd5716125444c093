# underwriting_engine/services/task_store.py

import threading
from typing import Dict, List, Optional

from underwriting_engine.core.errors import InvalidInput, InvalidTransition
from underwriting_engine.schemas.workflow import TaskStatus, UnderwritingTask
from underwriting_engine.services.task_graph import dependents_index

_ALLOWED = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.REQUIRES_REVIEW},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.REQUIRES_REVIEW: set(),
    TaskStatus.BLOCKED: set(),
}


class TaskStore:
    """
    Arena of one run's tasks, indexed by id.

    Every status change goes through apply(), which holds the store lock
    while it updates the task and promotes or blocks its dependents, so
    concurrent completions cannot lose each other's updates.
    """

    def __init__(self, tasks: List[UnderwritingTask]):
        self._lock = threading.Lock()
        self._tasks: Dict[str, UnderwritingTask] = {}
        for task in tasks:
            if task.status not in (TaskStatus.PENDING, TaskStatus.COMPLETED):
                raise InvalidInput(
                    f"Task {task.id} must start pending or completed, not {task.status.value}"
                )
            self._tasks[task.id] = task.model_copy(deep=True)

        self._dependents = dependents_index(self._tasks.values())
        self._unmet: Dict[str, int] = {}
        for task in self._tasks.values():
            self._unmet[task.id] = sum(
                1 for dep_id in set(task.dependencies)
                if self._tasks[dep_id].status != TaskStatus.COMPLETED
            )
        self._ready: List[str] = [
            task.id for task in self._tasks.values()
            if task.status == TaskStatus.PENDING and task.is_automatable and self._unmet[task.id] == 0
        ]

    def get(self, task_id: str) -> UnderwritingTask:
        return self._tasks[task_id]

    def tasks(self) -> List[UnderwritingTask]:
        with self._lock:
            return [task.model_copy() for task in self._tasks.values()]

    def statuses(self) -> Dict[str, TaskStatus]:
        with self._lock:
            return {task_id: task.status for task_id, task in self._tasks.items()}

    def take_ready(self, limit: Optional[int] = None) -> List[UnderwritingTask]:
        """Claim up to `limit` ready automatable tasks, moving them to in_progress."""
        with self._lock:
            count = len(self._ready) if limit is None else max(0, limit)
            batch, self._ready = self._ready[:count], self._ready[count:]
            for task_id in batch:
                self._transition(task_id, TaskStatus.IN_PROGRESS)
            return [self._tasks[task_id] for task_id in batch]

    def has_ready(self) -> bool:
        with self._lock:
            return bool(self._ready)

    def apply(self, task_id: str, status: TaskStatus) -> List[str]:
        """
        Transition one task and propagate the consequences.

        Returns the ids of dependents that became ready (on completion)
        or were blocked (on failure).
        """
        if task_id not in self._tasks:
            raise InvalidInput(f"Unknown task id: {task_id}")

        with self._lock:
            self._transition(task_id, status)
            if status == TaskStatus.COMPLETED:
                return self._promote_dependents(task_id)
            if status == TaskStatus.FAILED:
                return self._block_dependents(task_id)
            return []

    def _transition(self, task_id: str, status: TaskStatus) -> None:
        task = self._tasks[task_id]
        if status not in _ALLOWED[task.status]:
            raise InvalidTransition(task_id, task.status.value, status.value)
        task.status = status
        if status != TaskStatus.IN_PROGRESS and task_id in self._ready:
            self._ready.remove(task_id)

    def _promote_dependents(self, task_id: str) -> List[str]:
        promoted = []
        for dependent_id in dict.fromkeys(self._dependents[task_id]):
            self._unmet[dependent_id] -= 1
            dependent = self._tasks[dependent_id]
            if (
                self._unmet[dependent_id] == 0
                and dependent.status == TaskStatus.PENDING
                and dependent.is_automatable
            ):
                self._ready.append(dependent_id)
                promoted.append(dependent_id)
        return promoted

    def _block_dependents(self, task_id: str) -> List[str]:
        blocked = []
        stack = list(self._dependents[task_id])
        while stack:
            dependent_id = stack.pop()
            dependent = self._tasks[dependent_id]
            if dependent.status != TaskStatus.PENDING:
                continue
            dependent.status = TaskStatus.BLOCKED
            blocked.append(dependent_id)
            stack.extend(self._dependents[dependent_id])
        return blocked
