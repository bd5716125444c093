# underwriting_engine/schemas/transaction.py

from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field


class LoanType(str, Enum):
    EQUIPMENT = "equipment_loan"
    VEHICLE = "vehicle_loan"
    REAL_ESTATE = "real_estate_loan"
    WORKING_CAPITAL = "working_capital"
    BUSINESS_EXPANSION = "business_expansion"
    DEBT_CONSOLIDATION = "debt_consolidation"
    SBA = "sba_loan"
    LINE_OF_CREDIT = "line_of_credit"


class TransactionStatus(str, Enum):
    INITIAL = "initial"
    DOCUMENTATION = "documentation"
    UNDERWRITING = "underwriting"
    APPROVAL = "approval"
    FUNDED = "funded"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    ON_HOLD = "on_hold"


_FORWARD = [
    TransactionStatus.INITIAL,
    TransactionStatus.DOCUMENTATION,
    TransactionStatus.UNDERWRITING,
    TransactionStatus.APPROVAL,
    TransactionStatus.FUNDED,
]
_EXITS = {TransactionStatus.DECLINED, TransactionStatus.WITHDRAWN, TransactionStatus.ON_HOLD}

TERMINAL_STATUSES = {TransactionStatus.FUNDED, TransactionStatus.DECLINED, TransactionStatus.WITHDRAWN}


def _build_transitions() -> Dict[TransactionStatus, Set[TransactionStatus]]:
    transitions: Dict[TransactionStatus, Set[TransactionStatus]] = {}
    for current, nxt in zip(_FORWARD, _FORWARD[1:]):
        transitions[current] = {nxt} | _EXITS
    transitions[TransactionStatus.FUNDED] = set()
    transitions[TransactionStatus.DECLINED] = set()
    transitions[TransactionStatus.WITHDRAWN] = set()
    # A held transaction resumes at any non-terminal forward stage
    transitions[TransactionStatus.ON_HOLD] = {
        s for s in _FORWARD if s not in TERMINAL_STATUSES
    } | {TransactionStatus.DECLINED, TransactionStatus.WITHDRAWN}
    return transitions


STATUS_TRANSITIONS = _build_transitions()


class FinancialSummary(BaseModel):
    """Optional financial inputs. DTI, DSCR and LTV are fractions (0.35, not 35)."""
    credit_score: Optional[float] = Field(default=None, description="Bureau credit score")
    debt_to_income_ratio: Optional[float] = None
    cash_flow: Optional[float] = Field(default=None, description="Annual operating cash flow")
    dscr: Optional[float] = None
    ltv: Optional[float] = None
    risk_score: Optional[float] = None

    # Raw inputs used to derive missing ratios
    net_operating_income: Optional[float] = None
    annual_debt_service: Optional[float] = None
    monthly_debt: Optional[float] = None
    monthly_income: Optional[float] = None
    employment_years: Optional[float] = None
    liquid_assets: Optional[float] = None


class TransactionProfile(BaseModel):
    id: str
    type: LoanType
    requested_amount: float = Field(..., ge=0)
    proposed_terms: int = Field(..., gt=0, description="Proposed term in months")
    status: TransactionStatus = TransactionStatus.UNDERWRITING
    customer_name: Optional[str] = None
    purpose: Optional[str] = None
    collateral_value: Optional[float] = None
    financial_summary: FinancialSummary = Field(default_factory=FinancialSummary)
    risk_factors: List[str] = Field(default_factory=list)
    required_documents: List[str] = Field(default_factory=list)
    received_documents: List[str] = Field(default_factory=list)

    def can_transition_to(self, target: TransactionStatus) -> bool:
        return target in STATUS_TRANSITIONS[self.status]

    def with_ratios(self, **ratios: float) -> "TransactionProfile":
        """Return a copy with computed ratios attached to the financial summary."""
        summary = self.financial_summary.model_copy(
            update={k: v for k, v in ratios.items() if v is not None}
        )
        return self.model_copy(update={"financial_summary": summary})
