# underwriting_engine/core/errors.py


class UnderwritingError(Exception):
    """Base class for every error raised by the underwriting engine."""


class InvalidInput(UnderwritingError, ValueError):
    """Caller supplied unusable input (bad ratio operands, unknown task state...)."""


class UnsupportedLoanType(InvalidInput):
    def __init__(self, loan_type):
        self.loan_type = loan_type
        super().__init__(f"Unsupported loan type: {loan_type!r}")


class GraphInvariantViolation(UnderwritingError):
    """
    The task graph is not a DAG or references unknown task ids.
    A builder bug: the run is refused before anything executes.
    """


class InvalidTransition(UnderwritingError):
    def __init__(self, task_id: str, current, target):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id}: illegal transition {current} -> {target}")


class TaskExecutionFailure(UnderwritingError):
    """A single automated task could not complete. Recorded as data, never fatal to a run."""


class TaskTimeout(TaskExecutionFailure):
    def __init__(self, task_id: str, timeout_seconds: float):
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Task {task_id} timed out after {timeout_seconds}s")


class CircuitOpenError(TaskExecutionFailure):
    pass


class TransactionNotFound(UnderwritingError, LookupError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")
