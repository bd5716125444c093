import sys
import os
import asyncio

sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from underwriting_engine.schemas.transaction import FinancialSummary, LoanType, TransactionProfile
from underwriting_engine.schemas.workflow import AutomationStatus
from underwriting_engine.services.analysis_port import SimulatedAnalysisPort
from underwriting_engine.services.circuit_breaker import CircuitBreaker
from underwriting_engine.services.failure_injector import FailureInjector
from underwriting_engine.services.scheduler import DependencyScheduler, RunControl, RetryPolicy
from underwriting_engine.services.task_executor import TaskExecutor
from underwriting_engine.services.workflow_engine import UnderwritingWorkflowEngine
from underwriting_engine.workflows import loan_underwriting as catalog

# Sample equipment loan: strong borrower, human sign-offs already collected
SAMPLE_TRANSACTION = TransactionProfile(
    id="TXN-DEMO-001",
    type=LoanType.EQUIPMENT,
    requested_amount=250_000,
    proposed_terms=60,
    customer_name="Acme Fabrication LLC",
    purpose="CNC machining center",
    collateral_value=340_000,
    financial_summary=FinancialSummary(
        credit_score=742,
        cash_flow=96_000,
        net_operating_income=96_000,
        annual_debt_service=61_000,
        monthly_debt=4_200,
        monthly_income=14_500,
        employment_years=8,
        liquid_assets=80_000,
    ),
    required_documents=["application", "tax_returns", "bank_statements"],
    received_documents=["application", "tax_returns", "bank_statements"],
)

HUMAN_SIGN_OFFS = [catalog.COLLATERAL_VALUATION, catalog.EQUIPMENT_VALUATION]


async def run_single_test(failure_rate: float = 0.0, retries: int = 0):
    """
    Run a single underwriting workflow with the specified failure rate.
    """
    injector = FailureInjector(SimulatedAnalysisPort(), failure_rate=failure_rate, seed=42)
    executor = TaskExecutor(
        port=injector,
        circuit_breaker=CircuitBreaker(failure_threshold=5, recovery_timeout=30),
    )
    scheduler = DependencyScheduler(
        executor=executor,
        retry_policy=RetryPolicy(max_retries=retries, backoff_seconds=0.05),
    )
    engine = UnderwritingWorkflowEngine(scheduler=scheduler)

    control = RunControl()
    for task_id in HUMAN_SIGN_OFFS:
        control.complete_human_task(task_id)

    print(f"\n🎯 Testing with {failure_rate*100}% failure rate ({retries} retries)...")
    execution = await engine.execute(SAMPLE_TRANSACTION, control=control)
    return execution, injector.get_stats()


async def run_comparison_test():
    """
    Run the workflow at increasing failure rates, with and without retries.
    """
    print("\n" + "="*80)
    print("🧪 UNDERWRITING RELIABILITY COMPARISON")
    print("="*80)

    scenarios = [
        ("Baseline (0% failures)", 0.0, 0),
        ("Moderate (20% failures)", 0.20, 0),
        ("Moderate (20% failures, 2 retries)", 0.20, 2),
        ("Extreme (40% failures)", 0.40, 0),
        ("Extreme (40% failures, 2 retries)", 0.40, 2),
    ]

    results = []
    for name, rate, retries in scenarios:
        print(f"\n📊 {name}")
        results.append((name,) + await run_single_test(failure_rate=rate, retries=retries))

    # Summary
    print("\n" + "="*80)
    print("📈 RESULTS SUMMARY")
    print("="*80)

    for name, execution, stats in results:
        task_results = execution.run.results.values()
        completed = sum(1 for r in task_results if r.status == AutomationStatus.COMPLETED)
        failed = sorted(r.task_id for r in task_results if r.status == AutomationStatus.FAILED)
        total = len(execution.tasks)

        print(f"\n{name}:")
        print(f"  Status: {execution.status}")
        print(f"  Tasks Completed: {completed}/{total}")
        print(f"  Failed Tasks: {', '.join(failed) or 'none'}")
        print(f"  Injected Failures: {stats['injected_failures']}/{stats['total_calls']} calls")
        print(f"  Recommendation: {execution.decision.recommendation.value} "
              f"(confidence {execution.decision.confidence:.2f})")

if __name__ == "__main__":
    asyncio.run(run_comparison_test())
