# underwriting_engine/services/workflow_engine.py

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from underwriting_engine.core.config import settings
from underwriting_engine.core.errors import UnderwritingError
from underwriting_engine.schemas.audit import AuditEvent, AuditEventType
from underwriting_engine.schemas.decision import UnderwritingDecision
from underwriting_engine.schemas.transaction import TransactionProfile
from underwriting_engine.schemas.workflow import (
    UnderwritingTask,
    WorkflowExecution,
    WorkflowRunResult,
)
from underwriting_engine.services.audit import AuditSink, emit_audit_event
from underwriting_engine.services.decision_synthesizer import DecisionSynthesizer, ResultSet
from underwriting_engine.services.scheduler import DependencyScheduler, RunControl
from underwriting_engine.services.task_executor import TaskExecutor
from underwriting_engine.services.task_graph import TaskGraphBuilder
from underwriting_engine.services.transaction_source import TransactionSource

logger = logging.getLogger(__name__)


class UnderwritingWorkflowEngine:
    """
    Entry point for the UI layer: build the task graph, run it, synthesize a decision.
    """

    def __init__(
        self,
        transaction_source: Optional[TransactionSource] = None,
        audit_sink: Optional[AuditSink] = None,
        executor: Optional[TaskExecutor] = None,
        scheduler: Optional[DependencyScheduler] = None,
        synthesizer: Optional[DecisionSynthesizer] = None,
        builder: Optional[TaskGraphBuilder] = None,
    ):
        self.transaction_source = transaction_source
        self.audit_sink = audit_sink
        self.builder = builder or TaskGraphBuilder()
        self.scheduler = scheduler or DependencyScheduler(
            executor=executor or TaskExecutor(),
            audit_sink=audit_sink,
        )
        self.synthesizer = synthesizer or DecisionSynthesizer()
        self.active_executions: Dict[str, WorkflowExecution] = {}

    def build_task_graph(self, transaction: TransactionProfile) -> List[UnderwritingTask]:
        return self.builder.build(transaction)

    async def run_workflow(
        self,
        tasks: List[UnderwritingTask],
        transaction: TransactionProfile,
        concurrency_limit: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        control: Optional[RunControl] = None,
    ) -> WorkflowRunResult:
        if deadline_seconds is None:
            deadline_seconds = settings.RUN_DEADLINE_SECONDS
        return await self.scheduler.run(
            tasks,
            transaction,
            concurrency_limit=concurrency_limit,
            deadline_seconds=deadline_seconds,
            control=control,
        )

    def synthesize(self, transaction: TransactionProfile, results: ResultSet) -> UnderwritingDecision:
        decision = self.synthesizer.decide(transaction, results)
        emit_audit_event(self.audit_sink, AuditEvent(
            event_type=AuditEventType.DECISION_PRODUCED,
            transaction_id=transaction.id,
            payload={
                "recommendation": decision.recommendation.value,
                "confidence": decision.confidence,
                "risk_factors": decision.risk_factors,
            },
        ))
        return decision

    async def execute(
        self,
        transaction: TransactionProfile,
        concurrency_limit: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        control: Optional[RunControl] = None,
    ) -> WorkflowExecution:
        """
        Run the full workflow for one transaction: build, schedule, decide.
        A partial run (cancelled or past its deadline) returns without a decision.
        """
        execution_id = str(uuid.uuid4())
        execution = WorkflowExecution(
            execution_id=execution_id,
            transaction_id=transaction.id,
            status="running",
            created_at=datetime.now().isoformat(),
        )
        self.active_executions[execution_id] = execution

        logger.info("🚀 UNDERWRITING STARTED: %s (%s) execution %s",
                    transaction.id, transaction.type, execution_id)

        try:
            execution.tasks = self.build_task_graph(transaction)
            run = await self.run_workflow(
                execution.tasks,
                transaction,
                concurrency_limit=concurrency_limit,
                deadline_seconds=deadline_seconds,
                control=control,
            )
        except UnderwritingError as e:
            # Refuse to decide on a graph or input we cannot trust
            execution.status = "failed"
            execution.error = str(e)
            execution.completed_at = datetime.now().isoformat()
            logger.error("💥 UNDERWRITING REFUSED for %s: %s", transaction.id, e)
            raise

        execution.run = run
        execution.tasks = [
            task.model_copy(update={"status": run.task_statuses[task.id]}) for task in execution.tasks
        ]

        if run.partial:
            execution.status = "timed_out" if run.timed_out else "cancelled"
            logger.warning("🛑 UNDERWRITING STOPPED: %s (%s)", transaction.id, execution.status)
        else:
            try:
                execution.decision = self.synthesize(transaction, run.results)
                execution.transaction = self.attach_ratios(transaction, execution.decision)
            except Exception as e:
                execution.status = "failed"
                execution.error = str(e)
                execution.completed_at = datetime.now().isoformat()
                logger.exception("💥 DECISION FAILED for %s", transaction.id)
                raise
            execution.status = "completed"
            logger.info("✅ UNDERWRITING COMPLETED: %s → %s (confidence %.2f)",
                        transaction.id, execution.decision.recommendation.value,
                        execution.decision.confidence)

        execution.completed_at = datetime.now().isoformat()
        return execution

    async def underwrite(self, transaction_id: str, **options) -> WorkflowExecution:
        """Fetch a transaction from the configured source and run the full workflow."""
        if self.transaction_source is None:
            raise UnderwritingError("No transaction source configured")
        transaction = self.transaction_source.fetch(transaction_id)
        return await self.execute(transaction, **options)

    def attach_ratios(self, transaction: TransactionProfile, decision: UnderwritingDecision) -> TransactionProfile:
        """Copy of the transaction with the decision's ratios filled in where they were missing."""
        summary = transaction.financial_summary
        ratios = decision.financial_ratios
        return transaction.with_ratios(
            dscr=ratios.dscr if summary.dscr is None else None,
            ltv=ratios.ltv if summary.ltv is None else None,
            debt_to_income_ratio=ratios.debt_to_income if summary.debt_to_income_ratio is None else None,
        )

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Retrieve a workflow execution by ID."""
        return self.active_executions.get(execution_id)
