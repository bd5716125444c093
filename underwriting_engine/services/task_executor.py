# underwriting_engine/services/task_executor.py

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

from underwriting_engine.core.config import settings
from underwriting_engine.schemas.transaction import TransactionProfile
from underwriting_engine.schemas.workflow import (
    AutomationStatus,
    TaskAutomationResult,
    UnderwritingTask,
)
from underwriting_engine.services import financial_ratios
from underwriting_engine.services.analysis_port import AnalysisPort, SimulatedAnalysisPort
from underwriting_engine.services.circuit_breaker import CircuitBreaker
from underwriting_engine.workflows import loan_underwriting as catalog

logger = logging.getLogger(__name__)

SBA_MAX_LOAN_AMOUNT = 5_000_000


class TaskOutcome(NamedTuple):
    success: bool
    data: Dict[str, Any]
    notes: str


Handler = Callable[[UnderwritingTask, TransactionProfile], Awaitable[TaskOutcome]]


class TaskExecutor:
    """
    Executes a single automatable underwriting task.

    Each known task id maps to one simulated analysis; outbound calls go
    through the injected AnalysisPort behind a circuit breaker. Failures
    are returned as data, never raised.
    """

    def __init__(
        self,
        port: Optional[AnalysisPort] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        category_confidence: Optional[Dict[str, float]] = None,
        default_confidence: Optional[float] = None,
    ):
        self.port = port or SimulatedAnalysisPort()
        self.cb = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT,
        )
        self.category_confidence = dict(category_confidence or settings.CATEGORY_CONFIDENCE)
        self.default_confidence = (
            settings.DEFAULT_TASK_CONFIDENCE if default_confidence is None else default_confidence
        )

        self._handlers: Dict[str, Handler] = {
            catalog.DOCUMENTATION_VERIFICATION: self._verify_documentation,
            catalog.CREDIT_ANALYSIS: self._analyze_credit,
            catalog.INCOME_VERIFICATION: self._verify_income,
            catalog.DTI_CALCULATION: self._calculate_dti,
            catalog.RISK_ASSESSMENT: self._assess_risk,
            catalog.COMPLIANCE_CHECK: self._check_compliance,
            catalog.FINAL_DECISION: self._assemble_decision_package,
            catalog.LIEN_FILING_SEARCH: self._search_liens,
            catalog.SBA_ELIGIBILITY: self._check_sba_eligibility,
        }

    async def execute(
        self,
        task: UnderwritingTask,
        transaction: TransactionProfile,
    ) -> TaskAutomationResult:
        if not task.is_automatable:
            return TaskAutomationResult(
                task_id=task.id,
                status=AutomationStatus.REQUIRES_HUMAN,
                notes=f"Task {task.id} is assigned to a human reviewer",
            )

        start_time = time.perf_counter()
        handler = self._handlers.get(task.id)

        try:
            if handler is None:
                return TaskAutomationResult(
                    task_id=task.id,
                    status=AutomationStatus.COMPLETED,
                    result={"processed": True},
                    duration=time.perf_counter() - start_time,
                    confidence=self.default_confidence,
                    notes=f"Task {task.id} completed successfully",
                    attempts=1,
                )
            outcome = await handler(task, transaction)
        except Exception as e:
            # Port and calculation errors end this task only
            logger.warning("❌ Task %s failed: %s: %s", task.id, type(e).__name__, e)
            return TaskAutomationResult(
                task_id=task.id,
                status=AutomationStatus.FAILED,
                duration=time.perf_counter() - start_time,
                confidence=0.0,
                notes=f"Automation failed: {e}",
                attempts=1,
            )

        return TaskAutomationResult(
            task_id=task.id,
            status=AutomationStatus.COMPLETED if outcome.success else AutomationStatus.FAILED,
            result=outcome.data,
            duration=time.perf_counter() - start_time,
            confidence=self.confidence_for(task),
            notes=outcome.notes,
            attempts=1,
        )

    def confidence_for(self, task: UnderwritingTask) -> float:
        return self.category_confidence.get(task.category.value, self.default_confidence)

    async def _call_port(self, method: Callable, transaction: TransactionProfile) -> Dict[str, Any]:
        """Run a blocking port call in a worker thread, through the circuit breaker."""
        return await asyncio.to_thread(self.cb.call, method, transaction)

    # --- Handlers ---

    async def _verify_documentation(self, task, transaction: TransactionProfile) -> TaskOutcome:
        received = set(transaction.received_documents)
        missing = [doc for doc in transaction.required_documents if doc not in received]
        data = {
            "required": len(transaction.required_documents),
            "received": len(received),
            "missing": missing,
        }
        if missing:
            return TaskOutcome(False, data, f"Missing documents: {', '.join(missing)}")
        return TaskOutcome(True, data, "All required documentation received")

    async def _analyze_credit(self, task, transaction: TransactionProfile) -> TaskOutcome:
        report = await self._call_port(self.port.pull_credit_report, transaction)
        if not report.get("found"):
            return TaskOutcome(False, report, "No credit file found for applicant")
        return TaskOutcome(True, report, "Credit analysis completed successfully")

    async def _verify_income(self, task, transaction: TransactionProfile) -> TaskOutcome:
        income = await self._call_port(self.port.verify_income, transaction)
        if not income.get("verified"):
            return TaskOutcome(False, income, "Income could not be verified from available data")
        return TaskOutcome(True, income, "Income verified")

    async def _calculate_dti(self, task, transaction: TransactionProfile) -> TaskOutcome:
        summary = transaction.financial_summary
        if summary.debt_to_income_ratio is not None:
            dti_percent = financial_ratios.round_financial(summary.debt_to_income_ratio * 100)
        elif summary.monthly_debt is not None and summary.monthly_income and summary.monthly_income > 0:
            dti_percent = financial_ratios.debt_to_income(summary.monthly_debt, summary.monthly_income)
        else:
            return TaskOutcome(False, {}, "Insufficient debt and income data for DTI")

        data = {
            "dti_percent": dti_percent,
            "dti": financial_ratios.round_financial(dti_percent / 100),
            "monthly_debt": summary.monthly_debt,
            "monthly_income": summary.monthly_income,
        }
        return TaskOutcome(True, data, "DTI calculation completed based on available financial data")

    async def _assess_risk(self, task, transaction: TransactionProfile) -> TaskOutcome:
        summary = transaction.financial_summary
        ltv = summary.ltv
        if ltv is None and transaction.collateral_value and transaction.collateral_value > 0:
            ltv = financial_ratios.loan_to_value(
                transaction.requested_amount, transaction.collateral_value
            ) / 100
        dti = summary.debt_to_income_ratio
        if dti is None and summary.monthly_debt is not None and summary.monthly_income and summary.monthly_income > 0:
            dti = financial_ratios.debt_to_income(summary.monthly_debt, summary.monthly_income) / 100

        score = financial_ratios.risk_score({
            "credit_score": summary.credit_score,
            "debt_to_income_ratio": dti,
            "loan_to_value_ratio": ltv,
            "employment_history": summary.employment_years,
            "liquid_assets": summary.liquid_assets,
            "loan_amount": transaction.requested_amount,
        })
        if score < 0.3:
            level = "low"
        elif score < 0.7:
            level = "medium"
        else:
            level = "high"
        return TaskOutcome(True, {"risk_score": score, "risk_level": level}, f"Risk assessed as {level}")

    async def _check_compliance(self, task, transaction: TransactionProfile) -> TaskOutcome:
        regulatory, aml, ofac = await asyncio.gather(
            self._call_port(self.port.compliance_screen, transaction),
            self._call_port(self.port.aml_check, transaction),
            self._call_port(self.port.ofac_screen, transaction),
        )
        data = {"regulatory": regulatory, "aml": aml, "ofac": ofac}

        problems = []
        if regulatory.get("violations"):
            problems.append("regulatory violations")
        if not aml.get("cleared", False):
            problems.append("AML alert")
        if not ofac.get("cleared", False):
            problems.append("OFAC match")
        if problems:
            return TaskOutcome(False, data, f"Compliance screening flagged: {', '.join(problems)}")
        return TaskOutcome(True, data, "All compliance checks passed")

    async def _assemble_decision_package(self, task, transaction: TransactionProfile) -> TaskOutcome:
        data = {
            "package_ready": True,
            "requested_amount": transaction.requested_amount,
            "term_months": transaction.proposed_terms,
            "risk_factors": list(transaction.risk_factors),
        }
        return TaskOutcome(True, data, "Underwriting package assembled for decision")

    async def _search_liens(self, task, transaction: TransactionProfile) -> TaskOutcome:
        filings = await self._call_port(self.port.search_liens, transaction)
        count = len(filings.get("filings", []))
        notes = "No existing UCC filings found" if count == 0 else f"{count} existing UCC filing(s) found"
        return TaskOutcome(True, filings, notes)

    async def _check_sba_eligibility(self, task, transaction: TransactionProfile) -> TaskOutcome:
        eligible = transaction.requested_amount <= SBA_MAX_LOAN_AMOUNT
        data = {"eligible": eligible, "program_limit": SBA_MAX_LOAN_AMOUNT}
        if not eligible:
            return TaskOutcome(False, data, "Requested amount exceeds the SBA program limit")
        return TaskOutcome(True, data, "Borrower meets SBA size and amount requirements")
