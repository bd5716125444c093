# underwriting_engine/services/decision_synthesizer.py

from typing import Iterable, List, Mapping, Optional, Union

from underwriting_engine.core.config import settings
from underwriting_engine.schemas.decision import (
    FinancialRatios,
    Recommendation,
    UnderwritingDecision,
)
from underwriting_engine.schemas.transaction import TransactionProfile
from underwriting_engine.schemas.workflow import AutomationStatus, TaskAutomationResult
from underwriting_engine.services import financial_ratios

STANDARD_CONDITIONS = [
    "Additional collateral may be required",
    "Personal guarantee required",
    "Quarterly financial reporting",
]

REVIEW_ACTIONS = [
    "Senior underwriter review",
    "Additional documentation review",
    "Credit committee evaluation",
]

ResultSet = Union[Mapping[str, TaskAutomationResult], Iterable[TaskAutomationResult]]


class DecisionSynthesizer:
    """
    Turns task results and financial ratios into a lending recommendation.

    Rules are evaluated in order and the first match wins:
      1. approve       credit >= 720, DSCR >= 1.25, LTV <= 0.80, enough completed tasks, no risk factors
      2. conditional   credit >= 650, DSCR >= 1.15, LTV <= 0.85, enough completed tasks
      3. decline       credit < 600 or DSCR < 1.0 or LTV > 0.90
      4. review_required otherwise
    """

    def __init__(self, min_completed_tasks: Optional[int] = None, annual_rate: Optional[float] = None):
        self.min_completed_tasks = (
            settings.MIN_COMPLETED_TASKS if min_completed_tasks is None else min_completed_tasks
        )
        self.annual_rate = settings.DEFAULT_ANNUAL_RATE if annual_rate is None else annual_rate

    def decide(self, transaction: TransactionProfile, results: ResultSet) -> UnderwritingDecision:
        if isinstance(results, Mapping):
            results = results.values()
        results = list(results)

        completed = [r for r in results if r.status == AutomationStatus.COMPLETED]
        failed = sorted(r.task_id for r in results if r.status == AutomationStatus.FAILED)

        risk_factors = list(dict.fromkeys(transaction.risk_factors))
        risk_factors += [f"Failed task: {task_id}" for task_id in failed]

        ratios = self.financial_ratios(transaction)
        credit_score = transaction.financial_summary.credit_score or 0
        has_all_docs = len(completed) >= self.min_completed_tasks

        reasoning: List[str] = []
        conditions = None
        required_actions = None

        if (
            credit_score >= 720
            and ratios.dscr >= 1.25
            and ratios.ltv <= 0.80
            and has_all_docs
            and not risk_factors
        ):
            recommendation = Recommendation.APPROVE
            confidence = 0.90
            reasoning.append("Strong credit profile with excellent financial ratios")
            reasoning.append("All documentation requirements met")
            reasoning.append("No significant risk factors identified")
        elif (
            credit_score >= 650
            and ratios.dscr >= 1.15
            and ratios.ltv <= 0.85
            and has_all_docs
        ):
            recommendation = Recommendation.CONDITIONAL
            confidence = 0.75
            reasoning.append("Good credit profile with acceptable financial ratios")
            reasoning.append("Approval subject to additional conditions")
            conditions = list(STANDARD_CONDITIONS)
        elif credit_score < 600 or ratios.dscr < 1.0 or ratios.ltv > 0.90:
            recommendation = Recommendation.DECLINE
            confidence = 0.80
            reasoning.append("Credit score or financial ratios below minimum requirements")
        else:
            recommendation = Recommendation.REVIEW_REQUIRED
            confidence = 0.60
            reasoning.append("Complex case requiring human review")
            required_actions = list(REVIEW_ACTIONS)

        reasoning.append(
            f"Credit score {credit_score:.0f}, DSCR {ratios.dscr:.2f}, LTV {ratios.ltv:.2f}, "
            f"{len(completed)} completed task(s), {len(failed)} failed"
        )

        return UnderwritingDecision(
            recommendation=recommendation,
            confidence=confidence,
            reasoning=reasoning,
            conditions=conditions,
            required_actions=required_actions,
            risk_factors=risk_factors,
            mitigating_factors=self._mitigating_factors(credit_score, ratios, results),
            financial_ratios=ratios,
        )

    def financial_ratios(self, transaction: TransactionProfile) -> FinancialRatios:
        """Ratios from the transaction, filling gaps with computed values (0 when underivable)."""
        summary = transaction.financial_summary

        dscr = summary.dscr
        if dscr is None:
            dscr = self._derive_dscr(transaction)

        ltv = summary.ltv
        if ltv is None:
            ltv = 0.0
            if transaction.collateral_value and transaction.collateral_value > 0:
                ltv = financial_ratios.round_financial(
                    financial_ratios.loan_to_value(
                        transaction.requested_amount, transaction.collateral_value
                    ) / 100
                )

        dti = summary.debt_to_income_ratio
        if dti is None:
            dti = 0.0
            if summary.monthly_debt is not None and summary.monthly_income and summary.monthly_income > 0:
                dti = financial_ratios.round_financial(
                    financial_ratios.debt_to_income(summary.monthly_debt, summary.monthly_income) / 100
                )

        return FinancialRatios(
            dscr=dscr,
            ltv=ltv,
            debt_to_income=dti,
            cash_flow=summary.cash_flow or 0.0,
        )

    def _derive_dscr(self, transaction: TransactionProfile) -> float:
        summary = transaction.financial_summary
        income = summary.net_operating_income
        if income is None:
            income = summary.cash_flow
        if income is None:
            return 0.0

        debt_service = summary.annual_debt_service
        if debt_service is None:
            if transaction.requested_amount <= 0:
                return 0.0
            payment = financial_ratios.monthly_payment(
                transaction.requested_amount, self.annual_rate, transaction.proposed_terms
            )
            debt_service = payment * 12
        return financial_ratios.dscr(income, debt_service)

    def _mitigating_factors(
        self,
        credit_score: float,
        ratios: FinancialRatios,
        results: List[TaskAutomationResult],
    ) -> List[str]:
        factors = []
        if credit_score >= 720:
            factors.append("Strong credit history")
        if ratios.dscr >= 1.25:
            factors.append("Healthy debt service coverage")
        if 0 < ratios.ltv <= 0.80:
            factors.append("Conservative loan-to-value")
        if 0 < ratios.debt_to_income <= 0.36:
            factors.append("Manageable debt-to-income ratio")
        if ratios.cash_flow > 0:
            factors.append("Positive operating cash flow")
        automated = [r for r in results if r.status != AutomationStatus.REQUIRES_HUMAN]
        if automated and all(r.status == AutomationStatus.COMPLETED for r in automated):
            factors.append("All automated checks completed")
        return factors
