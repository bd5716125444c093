import random
from typing import Any, Optional

from underwriting_engine.core.errors import TaskExecutionFailure
from underwriting_engine.services.analysis_port import AnalysisPort


class FailureInjector:
    """
    AnalysisPort wrapper that injects controlled failures for testing.
    """
    def __init__(self, port: AnalysisPort, failure_rate: float = 0.0, seed: Optional[int] = None):
        self.port = port
        self.failure_rate = failure_rate  # 0.0 = no failures, 0.3 = 30% fail
        self.total_calls = 0
        self.injected_failures = 0
        self._random = random.Random(seed)

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.port, name)
        if not callable(target):
            return target

        def _call(*args, **kwargs):
            self.total_calls += 1

            # Randomly inject failure
            if self._random.random() < self.failure_rate:
                self.injected_failures += 1
                raise TaskExecutionFailure(
                    f"💉 INJECTED FAILURE in {name} (Rate: {self.failure_rate*100}%)"
                )

            # Normal execution
            return target(*args, **kwargs)

        return _call

    def get_stats(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "injected_failures": self.injected_failures,
            "failure_rate": f"{self.failure_rate*100:.1f}%",
            "actual_failure_rate": f"{(self.injected_failures/self.total_calls*100):.1f}%" if self.total_calls > 0 else "0%"
        }
