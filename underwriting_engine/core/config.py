from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# underwriting_engine/core/config.py

class Settings(BaseSettings):
    PROJECT_NAME: str = "Underwriting Workflow Engine"
    LOG_LEVEL: str = "INFO"

    # Scheduler
    MAX_CONCURRENCY: int = 4
    TASK_TIMEOUT_SECONDS: float = 30.0
    RUN_DEADLINE_SECONDS: Optional[float] = None
    MAX_TASK_RETRIES: int = 0  # No implicit retries unless configured
    RETRY_BACKOFF_SECONDS: float = 1.0

    # Decision rules
    # The base checklist has 8 tasks, so loan types without extra tasks
    # (working capital, expansion, consolidation, line of credit) can only
    # reach approve or conditional if this is lowered to 8 or less
    MIN_COMPLETED_TASKS: int = 10
    DEFAULT_ANNUAL_RATE: float = 0.08

    # Confidence (per task category, see TaskExecutor)
    REVIEW_CONFIDENCE_THRESHOLD: float = 0.5
    DEFAULT_TASK_CONFIDENCE: float = 0.8
    CATEGORY_CONFIDENCE: Dict[str, float] = {
        "documentation": 0.90,
        "verification": 0.95,
        "analysis": 0.88,
        "compliance": 0.92,
        "approval": 0.85,
    }

    # Simulated downstream services
    SIMULATED_LATENCY_SECONDS: float = 0.0
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT: int = 30

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
