from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Optional
from enum import Enum

from underwriting_engine.schemas.decision import UnderwritingDecision
from underwriting_engine.schemas.transaction import TransactionProfile


class TaskCategory(str, Enum):
    DOCUMENTATION = "documentation"
    VERIFICATION = "verification"
    ANALYSIS = "analysis"
    COMPLIANCE = "compliance"
    APPROVAL = "approval"

class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_REVIEW = "requires_review"
    BLOCKED = "blocked"

class Assignee(str, Enum):
    EVA = "eva"
    HUMAN = "human"

class AutomationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_HUMAN = "requires_human"


class UnderwritingTask(BaseModel):
    id: str
    title: str
    description: str = ""
    category: TaskCategory
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Assignee = Assignee.EVA
    automation_available: bool = False
    estimated_time: int = Field(default=0, ge=0, description="Estimated minutes")
    dependencies: List[str] = Field(default_factory=list)

    @property
    def is_automatable(self) -> bool:
        return self.assigned_to == Assignee.EVA and self.automation_available


class TaskAutomationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    status: AutomationStatus
    result: Optional[Dict[str, Any]] = None
    duration: float = Field(default=0.0, ge=0.0, description="Seconds spent executing")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    notes: str = ""
    attempts: int = 0


class WorkflowRunResult(BaseModel):
    results: Dict[str, TaskAutomationResult] = Field(default_factory=dict)
    partial: bool = False
    cancelled: bool = False
    timed_out: bool = False
    task_statuses: Dict[str, TaskStatus] = Field(default_factory=dict)
    dispatch_order: List[str] = Field(default_factory=list)


class WorkflowExecution(BaseModel):
    execution_id: str
    transaction_id: str
    status: str  # "running", "completed", "cancelled", "timed_out", "failed"
    tasks: List[UnderwritingTask] = Field(default_factory=list)
    transaction: Optional[TransactionProfile] = Field(default=None, description="Transaction with computed ratios attached")
    run: Optional[WorkflowRunResult] = None
    decision: Optional[UnderwritingDecision] = None
    error: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
