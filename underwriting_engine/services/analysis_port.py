# underwriting_engine/services/analysis_port.py

import hashlib
import random
import time
from typing import Any, Dict, Optional, Protocol

from underwriting_engine.core.config import settings
from underwriting_engine.schemas.transaction import TransactionProfile


class AnalysisPort(Protocol):
    """
    Outbound calls made by automated underwriting tasks.
    Swap in a real bureau/compliance client without touching the scheduler.
    """

    def pull_credit_report(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...

    def verify_income(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...

    def compliance_screen(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...

    def aml_check(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...

    def ofac_screen(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...

    def search_liens(self, transaction: TransactionProfile) -> Dict[str, Any]:
        ...


class SimulatedAnalysisPort:
    """
    Deterministic stand-in for the bureau, compliance and lien services.
    Answers are derived from the transaction itself; only latency is random.
    """

    def __init__(self, latency_seconds: Optional[float] = None):
        self.latency_seconds = (
            settings.SIMULATED_LATENCY_SECONDS if latency_seconds is None else latency_seconds
        )

    def _simulate_latency(self):
        if self.latency_seconds > 0:
            time.sleep(self.latency_seconds * (0.5 + random.random()))

    @staticmethod
    def _seed(transaction: TransactionProfile) -> int:
        return int(hashlib.sha256(transaction.id.encode()).hexdigest()[:8], 16)

    def pull_credit_report(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        score = transaction.financial_summary.credit_score
        if score is None:
            return {"found": False}

        seed = self._seed(transaction)
        base = int(score)
        return {
            "found": True,
            "credit_score": score,
            "bureau_scores": {
                "experian": base + (seed % 7) - 3,
                "equifax": base + (seed % 5) - 2,
                "transunion": base + (seed % 9) - 4,
            },
            "trade_lines": 6 + seed % 10,
            "derogatory": 0 if score >= 650 else 1 + seed % 3,
        }

    def verify_income(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        summary = transaction.financial_summary
        if summary.monthly_income is not None:
            monthly = summary.monthly_income
        elif summary.cash_flow is not None:
            monthly = summary.cash_flow / 12
        else:
            return {"verified": False}
        return {
            "verified": True,
            "monthly_income": round(monthly, 2),
            "sources": ["bank_statements", "tax_returns"],
        }

    def compliance_screen(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        return {
            "regulatory_compliance": True,
            "checks": ["Fair Lending", "TILA", "State Licensing"],
            "violations": [],
        }

    def aml_check(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        return {"cleared": True, "alerts": []}

    def ofac_screen(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        return {"cleared": True, "matches": []}

    def search_liens(self, transaction: TransactionProfile) -> Dict[str, Any]:
        self._simulate_latency()
        return {"filings": [], "searched": ["UCC-1"]}
