"""Core modules for APEX.

Contains the fundamental building blocks:
- task: Task model and status state machine
- container_runtime: Docker/Podman detection
- container_events: Engine event stream parsing and monitoring
- container_manager: Task container lifecycle management
- workspace: Workspace isolation (container, worktree, directory, none)
- workflows: Workflow and agent definitions
- stage_runner: Stage execution through coding CLIs
- orchestrator: Task execution, retries and dependency gating
"""

from apex_engine.core.container_manager import (
    ContainerConfig,
    ContainerManager,
    ContainerOperationResult,
    ResourceLimits,
)
from apex_engine.core.container_runtime import ContainerRuntime
from apex_engine.core.orchestrator import (
    TaskOrchestrator,
    create_orchestrator,
)
from apex_engine.core.task import (
    AutonomyLevel,
    Task,
    TaskPriority,
    TaskStatus,
    TaskUsage,
)
from apex_engine.core.workflows import (
    AgentDefinition,
    InMemoryWorkflowCatalog,
    StageDefinition,
    WorkflowDefinition,
    YamlWorkflowCatalog,
)
from apex_engine.core.workspace import (
    WorkspaceHandle,
    WorkspaceManager,
    WorkspaceStrategy,
)

__all__ = [
    # Tasks
    "Task",
    "TaskStatus",
    "TaskPriority",
    "TaskUsage",
    "AutonomyLevel",
    # Container management
    "ContainerConfig",
    "ContainerManager",
    "ContainerOperationResult",
    "ContainerRuntime",
    "ResourceLimits",
    # Workspace management
    "WorkspaceHandle",
    "WorkspaceManager",
    "WorkspaceStrategy",
    # Workflows
    "AgentDefinition",
    "InMemoryWorkflowCatalog",
    "StageDefinition",
    "WorkflowDefinition",
    "YamlWorkflowCatalog",
    # Orchestrator
    "TaskOrchestrator",
    "create_orchestrator",
]
