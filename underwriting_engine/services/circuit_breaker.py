import logging
import threading
import time
from enum import Enum
from typing import Callable, Any

from underwriting_engine.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"     # Normal operation (Current flows)
    OPEN = "OPEN"         # Circuit broken (Fails fast)
    HALF_OPEN = "HALF_OPEN" # Testing recovery

class CircuitBreaker:
    """
    Guards calls to a downstream analysis service.
    Safe to share between the worker threads that run port calls.
    """
    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0
        self._lock = threading.Lock()

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Executes the function if circuit is CLOSED or HALF_OPEN.
        Raises CircuitOpenError if OPEN.
        """
        with self._lock:
            if self.state == CircuitState.OPEN:
                # Check if we should try to recover (HALF_OPEN)
                time_since_failure = time.monotonic() - self.last_failure_time
                if time_since_failure > self.recovery_timeout:
                    logger.warning("⚠️ Circuit Breaker: Entering HALF_OPEN state (Testing recovery)...")
                    self.state = CircuitState.HALF_OPEN
                else:
                    remaining = int(self.recovery_timeout - time_since_failure)
                    raise CircuitOpenError(
                        f"Circuit breaker is OPEN. Blocking call to protect downstream service. Retry in {remaining}s"
                    )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        """Reset failure count on success"""
        with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info("✅ Circuit Breaker: Call successful. Closing circuit.")
                self.state = CircuitState.CLOSED
            self.failure_count = 0

    def _on_failure(self):
        """Track failures and open circuit if threshold reached"""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self.state == CircuitState.HALF_OPEN or (
                self.state != CircuitState.OPEN and self.failure_count >= self.failure_threshold
            ):
                self.state = CircuitState.OPEN
                logger.error(
                    "🔥 Circuit Breaker: Threshold reached (%d failures). Opening circuit!",
                    self.failure_count,
                )
