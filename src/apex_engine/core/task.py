"""Task model and status state machine."""

import re
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from apex_engine.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the task database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    PLANNING = "planning"
    IN_PROGRESS = "in-progress"
    WAITING_APPROVAL = "waiting-approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AutonomyLevel(str, Enum):
    """How much human approval a task's execution requires."""

    FULL = "full"
    REVIEW_BEFORE_MERGE = "review-before-merge"
    REVIEW_BEFORE_COMMIT = "review-before-commit"
    MANUAL = "manual"


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# failed -> queued is additionally gated on the retry budget (see Orchestrator).
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.PLANNING, TaskStatus.CANCELLED}),
    TaskStatus.PLANNING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.WAITING_APPROVAL,
            TaskStatus.PAUSED,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.WAITING_APPROVAL: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.FAILED: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS[TaskStatus(current)]


def validate_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is legal."""
    current = TaskStatus(current)
    target = TaskStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(task_id, current.value, target.value)


class TaskUsage(BaseModel):
    """Cumulative token and cost accounting for one task."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def add(self, input_tokens: int, output_tokens: int, cost: float) -> "TaskUsage":
        inputs = self.input_tokens + max(input_tokens, 0)
        outputs = self.output_tokens + max(output_tokens, 0)
        return TaskUsage(
            input_tokens=inputs,
            output_tokens=outputs,
            total_tokens=inputs + outputs,
            estimated_cost=self.estimated_cost + max(cost, 0.0),
        )


class Task(BaseModel):
    """A unit of work progressing through workflow stages."""

    id: str
    description: str
    acceptance_criteria: Optional[str] = None
    workflow: str = "feature"
    autonomy: AutonomyLevel = AutonomyLevel.FULL
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    project_path: str
    branch_name: Optional[str] = None
    workspace_strategy: Optional[str] = None
    current_stage: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    depends_on: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    usage: TaskUsage = Field(default_factory=TaskUsage)
    logs: list[str] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    exit_code: Optional[int] = None
    oom_killed: Optional[bool] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Task":
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0 <= self.retry_count <= self.max_retries:
            raise ValueError(
                f"retry_count must be within [0, {self.max_retries}], got {self.retry_count}"
            )
        if self.id in self.depends_on:
            raise ValueError("A task cannot depend on itself")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError("depends_on must not contain duplicates")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == TaskStatus.FAILED and self.retry_count < self.max_retries


def generate_task_id() -> str:
    """Sortable, collision-resistant task id (base36 time + random suffix)."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    return f"task_{encoded}_{secrets.token_hex(4)}"


def generate_branch_name(prefix: str, task_id: str, description: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", description.lower()).strip("-")[:40].rstrip("-")
    short_id = task_id.split("_")[-1]
    return f"{prefix}{short_id}-{slug}" if slug else f"{prefix}{short_id}"


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    input_price: float,
    output_price: float,
) -> float:
    """Cost in USD given prices per million tokens."""
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000
