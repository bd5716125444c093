# underwriting_engine/services/task_graph.py

import logging
from collections import deque
from typing import Dict, Iterable, List

from underwriting_engine.core.errors import GraphInvariantViolation, UnsupportedLoanType
from underwriting_engine.schemas.transaction import LoanType, TransactionProfile
from underwriting_engine.schemas.workflow import UnderwritingTask
from underwriting_engine.workflows.loan_underwriting import BASE_CHECKLIST, LOAN_SPECIFIC_TASKS

logger = logging.getLogger(__name__)


def dependents_index(tasks: Iterable[UnderwritingTask]) -> Dict[str, List[str]]:
    """Map each task id to the ids of the tasks that depend on it."""
    index: Dict[str, List[str]] = {}
    for task in tasks:
        index.setdefault(task.id, [])
        for dep_id in task.dependencies:
            index.setdefault(dep_id, []).append(task.id)
    return index


def validate_task_graph(tasks: List[UnderwritingTask]) -> List[str]:
    """
    Check the task set forms a DAG and return a topological order (Kahn's algorithm).

    Raises:
        GraphInvariantViolation: duplicate ids, dependencies on ids outside
            the set, self-dependencies or cycles.
    """
    by_id: Dict[str, UnderwritingTask] = {}
    for task in tasks:
        if task.id in by_id:
            raise GraphInvariantViolation(f"Duplicate task id: {task.id}")
        by_id[task.id] = task

    in_degree: Dict[str, int] = {}
    for task in tasks:
        unique_deps = set(task.dependencies)
        for dep_id in unique_deps:
            if dep_id == task.id:
                raise GraphInvariantViolation(f"Task {task.id} depends on itself")
            if dep_id not in by_id:
                raise GraphInvariantViolation(
                    f"Task {task.id} depends on unknown task {dep_id}"
                )
        in_degree[task.id] = len(unique_deps)

    dependents = dependents_index(tasks)
    # Seed in input order so the result is stable
    queue = deque(task.id for task in tasks if in_degree[task.id] == 0)
    order: List[str] = []

    while queue:
        task_id = queue.popleft()
        order.append(task_id)
        for dependent in dict.fromkeys(dependents[task_id]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(tasks):
        stuck = sorted(task_id for task_id, degree in in_degree.items() if degree > 0)
        raise GraphInvariantViolation(f"Dependency cycle among tasks: {', '.join(stuck)}")

    return order


class TaskGraphBuilder:
    """
    Produces the underwriting task graph for a transaction:
    the base checklist plus loan-type-specific additions.
    """

    def build(self, transaction: TransactionProfile) -> List[UnderwritingTask]:
        try:
            loan_type = LoanType(transaction.type)
        except ValueError:
            raise UnsupportedLoanType(transaction.type) from None

        # Fresh copies: tasks are mutated during a run and never shared across runs
        tasks = [task.model_copy(deep=True) for task in BASE_CHECKLIST]
        tasks += [task.model_copy(deep=True) for task in LOAN_SPECIFIC_TASKS.get(loan_type, [])]

        validate_task_graph(tasks)
        logger.debug("Built %d tasks for %s (%s)", len(tasks), transaction.id, loan_type.value)
        return tasks


def summarize_checklist(tasks: List[UnderwritingTask]) -> dict:
    automatable = [t for t in tasks if t.is_automatable]
    return {
        "total_tasks": len(tasks),
        "automatable_tasks": len(automatable),
        "human_tasks": len(tasks) - len(automatable),
        "estimated_minutes": sum(t.estimated_time for t in tasks),
        "automatable_minutes": sum(t.estimated_time for t in automatable),
    }
