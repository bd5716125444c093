import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import BaseModel, Field
from typing import List, Optional
import logging

from underwriting_engine.core.config import settings
from underwriting_engine.core.errors import (
    GraphInvariantViolation,
    InvalidInput,
    InvalidTransition,
    TransactionNotFound,
)
from underwriting_engine.schemas.decision import UnderwritingDecision
from underwriting_engine.schemas.transaction import LoanType, TransactionProfile
from underwriting_engine.schemas.workflow import TaskAutomationResult, WorkflowExecution
from underwriting_engine.services import financial_ratios
from underwriting_engine.services.audit import LoggingAuditSink
from underwriting_engine.services.circuit_breaker import CircuitState
from underwriting_engine.services.scheduler import RunControl
from underwriting_engine.services.task_graph import summarize_checklist, validate_task_graph
from underwriting_engine.services.transaction_source import InMemoryTransactionStore
from underwriting_engine.services.workflow_engine import UnderwritingWorkflowEngine

logger = logging.getLogger(__name__)


# ============================================================================
# Shared process-local state: one transaction store, one engine
# ============================================================================
transaction_store = InMemoryTransactionStore()
workflow_engine = UnderwritingWorkflowEngine(
    transaction_source=transaction_store,
    audit_sink=LoggingAuditSink(),
)


# --- LIFESPAN ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup and report on shutdown"""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("🏥 %s starting (concurrency %d, task timeout %.0fs)",
                settings.PROJECT_NAME, settings.MAX_CONCURRENCY, settings.TASK_TIMEOUT_SECONDS)
    yield
    logger.info("🛑 Shutting down gracefully...")
    logger.info("📊 Executions this session: %d", len(workflow_engine.active_executions))


# --- FASTAPI APP ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Dependency-aware loan underwriting workflow with rule-based decisions",
    version="1.0.0",
    lifespan=lifespan
)

# CORS MIDDLEWARE
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # Allow all for local dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- ERROR MAPPING ---

@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TransactionNotFound)
async def not_found_handler(request: Request, exc: TransactionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(GraphInvariantViolation)
async def graph_violation_handler(request: Request, exc: GraphInvariantViolation):
    logger.error("💥 Refused invalid task graph: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# --- REQUEST MODELS ---

class RunOptions(BaseModel):
    concurrency_limit: Optional[int] = Field(default=None, ge=1)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)
    completed_human_tasks: List[str] = Field(
        default_factory=list,
        description="Human-assigned task ids already signed off before the run",
    )


class ExecuteRequest(RunOptions):
    transaction: TransactionProfile


class DecisionRequest(BaseModel):
    transaction: TransactionProfile
    results: List[TaskAutomationResult] = Field(default_factory=list)


class RatioRequest(BaseModel):
    net_operating_income: Optional[float] = None
    total_debt_service: Optional[float] = None
    monthly_debt: Optional[float] = None
    monthly_income: Optional[float] = None
    loan_amount: Optional[float] = None
    asset_value: Optional[float] = None
    credit_score: Optional[float] = None
    employment_history: Optional[float] = Field(default=None, description="Years in current employment")
    liquid_assets: Optional[float] = None


def _run_control(options: RunOptions) -> RunControl:
    control = RunControl()
    for task_id in options.completed_human_tasks:
        control.complete_human_task(task_id)
    return control


async def _execute(transaction: TransactionProfile, options: RunOptions) -> WorkflowExecution:
    return await workflow_engine.execute(
        transaction,
        concurrency_limit=options.concurrency_limit,
        deadline_seconds=options.deadline_seconds,
        control=_run_control(options),
    )


# --- API ENDPOINTS ---

@app.get("/")
async def root():
    """API documentation pointer"""
    return {
        "message": "Underwriting Workflow Engine Online",
        "version": "1.0.0",
        "status": "online",
        "supported_loan_types": [loan_type.value for loan_type in LoanType],
    }


@app.get("/health")
async def health_check():
    """Report whether the downstream analysis services are reachable"""
    breaker = workflow_engine.scheduler.executor.cb
    result = {
        "status": "healthy",
        "circuit_breaker": breaker.state.value,
        "active_executions": len(workflow_engine.active_executions),
    }
    if breaker.state == CircuitState.OPEN:
        result["status"] = "unhealthy"
        raise HTTPException(status_code=503, detail=result)
    return result


@app.post("/v1/transactions", response_model=TransactionProfile, status_code=201)
async def register_transaction(transaction: TransactionProfile):
    """Store a transaction so it can be underwritten by id"""
    return transaction_store.save(transaction)


@app.post("/v1/underwriting/tasks")
async def build_tasks(transaction: TransactionProfile):
    """Preview the task graph a transaction would run"""
    tasks = workflow_engine.build_task_graph(transaction)
    return {
        "transaction_id": transaction.id,
        "tasks": tasks,
        "execution_order": validate_task_graph(tasks),
        "summary": summarize_checklist(tasks),
    }


@app.post("/v1/underwriting/execute", response_model=WorkflowExecution)
async def execute_underwriting(body: ExecuteRequest):
    """
    Runs the full underwriting workflow for an inline transaction.
    Returns the execution record: task states, per-task results and the decision.
    """
    return await _execute(body.transaction, body)


@app.post("/v1/transactions/{transaction_id}/underwrite", response_model=WorkflowExecution)
async def underwrite_transaction(transaction_id: str, body: Optional[RunOptions] = None):
    """Underwrite a previously registered transaction"""
    options = body or RunOptions()
    return await workflow_engine.underwrite(
        transaction_id,
        concurrency_limit=options.concurrency_limit,
        deadline_seconds=options.deadline_seconds,
        control=_run_control(options),
    )


@app.get("/v1/underwriting/{execution_id}", response_model=WorkflowExecution)
async def get_underwriting_status(execution_id: str):
    """Get the detailed status of a workflow execution by ID"""
    execution = workflow_engine.get_execution(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


@app.post("/v1/underwriting/decision", response_model=UnderwritingDecision)
async def synthesize_decision(body: DecisionRequest):
    """Apply the decision rules to externally supplied task results"""
    return workflow_engine.synthesize(body.transaction, body.results)


@app.post("/v1/ratios")
async def compute_ratios(body: RatioRequest):
    """Compute whichever ratios the supplied inputs allow, plus a composite risk score"""
    ratios = {}
    if body.net_operating_income is not None and body.total_debt_service is not None:
        ratios["dscr"] = financial_ratios.dscr(body.net_operating_income, body.total_debt_service)
    if body.monthly_debt is not None and body.monthly_income is not None:
        ratios["debt_to_income"] = financial_ratios.debt_to_income(body.monthly_debt, body.monthly_income)
    if body.loan_amount is not None and body.asset_value is not None:
        ratios["loan_to_value"] = financial_ratios.loan_to_value(body.loan_amount, body.asset_value)

    ratios["risk_score"] = financial_ratios.risk_score({
        "credit_score": body.credit_score,
        "debt_to_income_ratio": ratios["debt_to_income"] / 100 if "debt_to_income" in ratios else None,
        "loan_to_value_ratio": ratios["loan_to_value"] / 100 if "loan_to_value" in ratios else None,
        "employment_history": body.employment_history,
        "liquid_assets": body.liquid_assets,
        "loan_amount": body.loan_amount,
    })
    return ratios


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Run the underwriting engine API")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run("underwriting_engine.main:app", host=args.host, port=args.port)
