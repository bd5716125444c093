# underwriting_engine/services/financial_ratios.py

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

from underwriting_engine.core.errors import InvalidInput

_CENT = Decimal("0.01")
NEUTRAL_RISK = 0.5

# Composite risk weights (sum to 1.0)
RISK_WEIGHTS = {
    "credit": 0.35,
    "dti": 0.20,
    "ltv": 0.20,
    "employment": 0.10,
    "liquidity": 0.15,
}


def round_financial(value: float) -> float:
    """
    Round to 2 decimals, half away from zero.
    Every ratio this module produces goes through here.
    """
    return float(Decimal(repr(float(value))).quantize(_CENT, rounding=ROUND_HALF_UP))


def _number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if math.isnan(value) or math.isinf(value):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return float(value)


def dscr(net_operating_income: float, total_debt_service: float) -> float:
    """Debt service coverage. Zero debt service yields 0, not an error."""
    noi = _number("net_operating_income", net_operating_income)
    debt_service = _number("total_debt_service", total_debt_service)
    if debt_service == 0:
        return 0.0
    return round_financial(noi / debt_service)


def debt_to_income(monthly_debt: float, monthly_income: float) -> float:
    """DTI as a percentage."""
    debt = _number("monthly_debt", monthly_debt)
    income = _number("monthly_income", monthly_income)
    if income <= 0:
        raise InvalidInput("monthly_income must be greater than 0")
    return round_financial((debt / income) * 100)


def loan_to_value(loan_amount: float, asset_value: float) -> float:
    """LTV as a percentage."""
    amount = _number("loan_amount", loan_amount)
    value = _number("asset_value", asset_value)
    if value <= 0:
        raise InvalidInput("asset_value must be greater than 0")
    return round_financial((amount / value) * 100)


def monthly_payment(principal: float, annual_rate: float, term_months: int) -> float:
    """Level amortized payment for a fixed-rate loan."""
    principal = _number("principal", principal)
    annual_rate = _number("annual_rate", annual_rate)
    term = _number("term_months", term_months)
    if principal <= 0:
        raise InvalidInput("principal must be greater than 0")
    if annual_rate < 0:
        raise InvalidInput("annual_rate cannot be negative")
    if term <= 0:
        raise InvalidInput("term_months must be greater than 0")

    if annual_rate == 0:
        return round_financial(principal / term)

    r = annual_rate / 12
    return round_financial(principal * r / (1 - (1 + r) ** -term))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _optional(inputs: Mapping[str, Any], key: str) -> Optional[float]:
    value = inputs.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def risk_score(inputs: Mapping[str, Any]) -> float:
    """
    Composite default-risk score in [0, 1] (higher is riskier).

    Recognised keys: credit_score, debt_to_income_ratio (fraction),
    loan_to_value_ratio (fraction), employment_history (years),
    liquid_assets, loan_amount. A missing or non-numeric field
    contributes a neutral 0.5 instead of raising.
    """
    credit = _optional(inputs, "credit_score")
    dti = _optional(inputs, "debt_to_income_ratio")
    ltv = _optional(inputs, "loan_to_value_ratio")
    employment = _optional(inputs, "employment_history")
    liquid = _optional(inputs, "liquid_assets")
    amount = _optional(inputs, "loan_amount")

    components = {
        # 800+ scores carry no credit risk, 550 and below carry full risk
        "credit": NEUTRAL_RISK if credit is None else _clamp((800 - credit) / 250),
        "dti": NEUTRAL_RISK if dti is None else _clamp((dti - 0.20) / 0.30),
        "ltv": NEUTRAL_RISK if ltv is None else _clamp((ltv - 0.60) / 0.40),
        "employment": NEUTRAL_RISK if employment is None else _clamp(1 - employment / 5),
        "liquidity": NEUTRAL_RISK,
    }
    if liquid is not None and amount is not None and amount > 0:
        # Reserves of 25% of the loan or more remove liquidity risk
        components["liquidity"] = _clamp(1 - (liquid / amount) / 0.25)

    score = sum(RISK_WEIGHTS[name] * value for name, value in components.items())
    return round_financial(_clamp(score))


def validate_financial_inputs(inputs: Mapping[str, Any]) -> bool:
    """Sanity-check loan inputs. Unknown keys are ignored."""
    rules = {
        "loan_amount": lambda v: v > 0,
        "interest_rate": lambda v: 0 <= v <= 1,
        "term_years": lambda v: 0 < v <= 50,
        "debt_to_income_ratio": lambda v: 0 <= v <= 1,
    }
    for key, check in rules.items():
        if key not in inputs:
            continue
        value = _optional(inputs, key)
        if value is None or not check(value):
            return False
    return True
