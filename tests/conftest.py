# tests/conftest.py

import asyncio

import pytest

from underwriting_engine.schemas.transaction import FinancialSummary, LoanType, TransactionProfile
from underwriting_engine.schemas.workflow import (
    Assignee,
    AutomationStatus,
    TaskAutomationResult,
    TaskCategory,
    TaskStatus,
    UnderwritingTask,
)


class FakeAnalysisPort:
    """AnalysisPort with clean default answers; individual methods can be overridden or made to raise."""

    def __init__(self, responses=None, failing=()):
        self.responses = responses or {}
        self.failing = set(failing)
        self.calls = []

    def _answer(self, name, default):
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")
        return self.responses.get(name, default)

    def pull_credit_report(self, transaction):
        return self._answer("pull_credit_report", {"found": True, "credit_score": 740})

    def verify_income(self, transaction):
        return self._answer("verify_income", {"verified": True, "monthly_income": 12000})

    def compliance_screen(self, transaction):
        return self._answer("compliance_screen", {"regulatory_compliance": True, "violations": []})

    def aml_check(self, transaction):
        return self._answer("aml_check", {"cleared": True, "alerts": []})

    def ofac_screen(self, transaction):
        return self._answer("ofac_screen", {"cleared": True, "matches": []})

    def search_liens(self, transaction):
        return self._answer("search_liens", {"filings": []})


class ScriptedExecutor:
    """
    Stand-in TaskExecutor. Outcomes are scripted per task id as
    (status, confidence) tuples or exceptions to raise; tracks the
    call order and the peak number of concurrent executions.
    """

    def __init__(self, outcomes=None, delays=None, fail_times=None):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.fail_times = dict(fail_times or {})
        self.calls = []
        self.finished = []
        self.log = []
        self.running = 0
        self.peak = 0

    async def execute(self, task, transaction):
        self.calls.append(task.id)
        self.log.append(("start", task.id))
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await asyncio.sleep(self.delays.get(task.id, 0))
        finally:
            self.running -= 1
        self.finished.append(task.id)
        self.log.append(("end", task.id))

        if self.fail_times.get(task.id, 0) > 0:
            self.fail_times[task.id] -= 1
            status, confidence = AutomationStatus.FAILED, 0.0
        else:
            outcome = self.outcomes.get(task.id, (AutomationStatus.COMPLETED, 0.9))
            if isinstance(outcome, Exception):
                raise outcome
            status, confidence = outcome

        return TaskAutomationResult(
            task_id=task.id,
            status=status,
            confidence=confidence,
            notes="scripted",
            attempts=1,
        )


class ExplodingAuditSink:
    def __init__(self):
        self.attempts = 0

    def record(self, event):
        self.attempts += 1
        raise ConnectionError("audit store is down")


@pytest.fixture
def make_transaction():
    """Factory for a strong-borrower transaction; keyword overrides replace fields."""
    def _make(**overrides):
        summary = overrides.pop("financial_summary", None) or FinancialSummary(
            credit_score=742,
            cash_flow=96_000,
            net_operating_income=96_000,
            annual_debt_service=61_000,
            monthly_debt=4_200,
            monthly_income=14_500,
            employment_years=8,
            liquid_assets=80_000,
        )
        fields = {
            "id": "TXN-TEST-001",
            "type": LoanType.EQUIPMENT,
            "requested_amount": 250_000,
            "proposed_terms": 60,
            "customer_name": "Acme Fabrication LLC",
            "collateral_value": 340_000,
            "financial_summary": summary,
            "required_documents": ["application", "tax_returns"],
            "received_documents": ["application", "tax_returns"],
        }
        fields.update(overrides)
        return TransactionProfile(**fields)
    return _make


@pytest.fixture
def make_task():
    def _make(task_id, dependencies=(), human=False, status=TaskStatus.PENDING,
              category=TaskCategory.ANALYSIS):
        return UnderwritingTask(
            id=task_id,
            title=f"Task {task_id}",
            category=category,
            status=status,
            assigned_to=Assignee.HUMAN if human else Assignee.EVA,
            automation_available=not human,
            dependencies=list(dependencies),
        )
    return _make


@pytest.fixture
def make_results():
    """Build task results: `completed` successes plus the given failed ids."""
    def _make(completed=10, failed=()):
        results = [
            TaskAutomationResult(task_id=f"T-{i:03d}", status=AutomationStatus.COMPLETED, confidence=0.9)
            for i in range(completed)
        ]
        results += [
            TaskAutomationResult(task_id=task_id, status=AutomationStatus.FAILED)
            for task_id in failed
        ]
        return results
    return _make


@pytest.fixture
def make_port():
    return FakeAnalysisPort


@pytest.fixture
def scripted_executor():
    return ScriptedExecutor


@pytest.fixture
def exploding_sink():
    return ExplodingAuditSink()
