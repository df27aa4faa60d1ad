"""Task API for APEX.

Thin HTTP layer over the orchestrator. Domain errors are translated to
status codes by the exception handlers registered in ``apex_engine.main``.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from apex_engine.core.errors import InvalidTransitionError, TaskNotFoundError
from apex_engine.core.orchestrator import TaskOrchestrator
from apex_engine.core.task import AutonomyLevel, Task, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


def get_task_orchestrator(request: Request) -> TaskOrchestrator:
    """Orchestrator owned by the running application."""
    return request.app.state.orchestrator


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateTaskRequest(BaseModel):
    description: str = Field(..., min_length=1)
    workflow: str = "feature"
    autonomy: AutonomyLevel = AutonomyLevel.FULL
    priority: TaskPriority = TaskPriority.NORMAL
    acceptance_criteria: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=0)
    depends_on: list[str] = Field(default_factory=list)
    project_path: Optional[str] = None


class ExecuteTaskRequest(BaseModel):
    strategy: Optional[str] = Field(None, description="container, worktree, directory or none")
    image: Optional[str] = None
    cpu: Optional[float] = Field(None, gt=0)
    memory: Optional[str] = None
    keep_workspace: Optional[bool] = None

    def overrides(self) -> dict[str, Any]:
        values = {"image": self.image, "cpu": self.cpu, "memory": self.memory}
        return {key: value for key, value in values.items() if value is not None}


class StatusUpdateRequest(BaseModel):
    status: TaskStatus
    error: Optional[str] = None


class TaskActionResponse(BaseModel):
    task_id: str
    status: str
    accepted: bool = True


# =============================================================================
# Endpoints
# =============================================================================


@router.get("")
async def list_tasks(
    status: Optional[list[TaskStatus]] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> list[Task]:
    """List tasks, oldest first."""
    return orchestrator.list_tasks(status=status, limit=limit)


@router.post("", status_code=201)
async def create_task(
    body: CreateTaskRequest,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.create_task(
        body.description,
        workflow=body.workflow,
        autonomy=body.autonomy,
        priority=body.priority,
        acceptance_criteria=body.acceptance_criteria,
        max_retries=body.max_retries,
        depends_on=body.depends_on,
        project_path=body.project_path,
    )


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    task = orchestrator.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


@router.post("/{task_id}/execute", status_code=202)
async def execute_task(
    task_id: str,
    body: Optional[ExecuteTaskRequest] = None,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> TaskActionResponse:
    """Start executing a task in the background."""
    body = body or ExecuteTaskRequest()
    task = orchestrator.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    if task.status not in (TaskStatus.PENDING, TaskStatus.QUEUED):
        raise InvalidTransitionError(task_id, task.status.value, TaskStatus.QUEUED.value)
    if task_id in orchestrator.get_running_tasks():
        raise HTTPException(status_code=409, detail=f"Task {task_id} is already running")

    orchestrator.start_task(
        task_id,
        strategy=body.strategy,
        overrides=body.overrides(),
        keep_workspace=body.keep_workspace,
    )
    logger.info(f"Task {task_id} execution requested")
    return TaskActionResponse(task_id=task_id, status=task.status.value)


@router.post("/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> TaskActionResponse:
    cancelled = await orchestrator.cancel_task(task_id)
    task = orchestrator.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return TaskActionResponse(task_id=task_id, status=task.status.value, accepted=cancelled)


@router.post("/{task_id}/retry")
async def retry_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.retry_task(task_id)


@router.post("/{task_id}/approve")
async def approve_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.approve_task(task_id)


@router.post("/{task_id}/pause")
async def pause_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.pause_task(task_id)


@router.post("/{task_id}/resume")
async def resume_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.resume_task(task_id)


@router.put("/{task_id}/status")
async def update_task_status(
    task_id: str,
    body: StatusUpdateRequest,
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
) -> Task:
    return await orchestrator.update_task_status(task_id, body.status, error=body.error)
