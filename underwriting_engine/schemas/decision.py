from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Recommendation(str, Enum):
    APPROVE = "approve"
    DECLINE = "decline"
    CONDITIONAL = "conditional"
    REVIEW_REQUIRED = "review_required"


class FinancialRatios(BaseModel):
    dscr: float = 0.0
    ltv: float = Field(default=0.0, description="Loan-to-value as a fraction")
    debt_to_income: float = Field(default=0.0, description="Debt-to-income as a fraction")
    cash_flow: float = 0.0


class UnderwritingDecision(BaseModel):
    recommendation: Recommendation = Field(..., description="The final lending recommendation")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence score between 0 and 1")
    reasoning: List[str] = Field(default_factory=list)
    conditions: Optional[List[str]] = None
    required_actions: Optional[List[str]] = None
    risk_factors: List[str] = Field(default_factory=list)
    mitigating_factors: List[str] = Field(default_factory=list)
    financial_ratios: FinancialRatios = Field(default_factory=FinancialRatios)
