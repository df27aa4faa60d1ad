"""Exception taxonomy for the task engine.

Task-scoped failures are raised inside the engine and recorded on the task by
the orchestrator. Container operations never raise these for expected
failures; they return them inside a ``ContainerOperationResult`` instead.
"""

from typing import Optional, Sequence


class ApexError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ApexError):
    """Invalid or missing configuration (image, resource spec, workflow)."""


class WorkflowNotFoundError(ConfigurationError):
    """A task references a workflow the catalogue does not know."""

    def __init__(self, workflow: str):
        super().__init__(f"Workflow not found: {workflow}")
        self.workflow = workflow


class RuntimeUnavailableError(ApexError):
    """No usable container engine was detected on the host."""

    def __init__(self, message: str = "No container runtime available. Install Docker or Podman."):
        super().__init__(message)


class ContainerOperationError(ApexError):
    """A container engine operation failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        container_id: Optional[str] = None,
        stderr: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        super().__init__(f"Container {operation} failed: {message}")
        self.operation = operation
        self.container_id = container_id
        self.stderr = stderr
        self.exit_code = exit_code


class EventStreamError(ApexError):
    """A single event line could not be parsed."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class TaskNotFoundError(ApexError, LookupError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateIdError(ApexError):
    def __init__(self, task_id: str):
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class DependencyUnmetError(ApexError):
    """A task cannot leave ``queued`` while dependencies are incomplete."""

    def __init__(self, task_id: str, unmet: Sequence[str]):
        super().__init__(f"Task {task_id} is blocked by: {', '.join(unmet)}")
        self.task_id = task_id
        self.unmet = list(unmet)


class RetryExhaustedError(ApexError):
    def __init__(self, task_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Task {task_id} has used all retries ({retry_count}/{max_retries})"
        )
        self.task_id = task_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class InvalidTransitionError(ApexError):
    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Invalid status transition for task {task_id}: {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class WorkspaceError(ApexError):
    """Acquiring, using or releasing a workspace failed."""

    def __init__(self, strategy: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Workspace ({strategy}) error: {message}")
        self.strategy = strategy
        self.cause = cause


class StageExecutionError(ApexError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage


class BudgetExceededError(ApexError):
    def __init__(self, task_id: str, cost: float, limit: float):
        super().__init__(f"Task {task_id} exceeded budget: ${cost:.4f} > ${limit:.2f}")
        self.task_id = task_id
        self.cost = cost
        self.limit = limit
