"""Task Orchestrator for APEX.

The orchestrator is responsible for:
1. Creating tasks and validating their workflow
2. Gating execution on task dependencies
3. Acquiring an isolated workspace per task
4. Running workflow stages through the stage runner
5. Recording usage, logs and failures, and applying the retry policy
6. Reacting to containers that die underneath a running task
"""

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from apex_engine.config import Settings, settings
from apex_engine.core.container_events import EventsMonitorOptions
from apex_engine.core.container_manager import (
    MANAGED_LABEL,
    ContainerDiedEvent,
    ContainerManager,
)
from apex_engine.core.errors import (
    ApexError,
    BudgetExceededError,
    ConfigurationError,
    DependencyUnmetError,
    InvalidTransitionError,
    RetryExhaustedError,
    RuntimeUnavailableError,
    TaskNotFoundError,
    WorkspaceError,
)
from apex_engine.core.events import EventBus, EventHandler
from apex_engine.core.health import ContainerHealthMonitor
from apex_engine.core.stage_runner import CLIStageRunner, StageContext, StageResult, StageRunner
from apex_engine.core.task import (
    AutonomyLevel,
    Task,
    TaskPriority,
    TaskStatus,
    calculate_cost,
    generate_branch_name,
    generate_task_id,
    utcnow,
    validate_transition,
)
from apex_engine.core.workflows import WorkflowCatalog, YamlWorkflowCatalog, validate_workflow
from apex_engine.core.workspace import WorkspaceHandle, WorkspaceManager
from apex_engine.db.store import TaskStore

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 3,
}

# (error message, retryable) for a failed attempt; None when the run should stop
AttemptFailure = Optional[tuple[str, bool]]


class WorkspaceLease:
    """Releases one workspace at most once, however many callers ask."""

    def __init__(
        self,
        handle: WorkspaceHandle,
        release: Callable[[WorkspaceHandle, bool], Awaitable[None]],
    ):
        self.handle = handle
        self._release_fn = release
        self._release: Optional[asyncio.Future] = None

    @property
    def released(self) -> bool:
        return self._release is not None

    async def release(self, keep: bool = False) -> None:
        if self._release is None:
            self._release = asyncio.ensure_future(self._release_fn(self.handle, keep))
        # Shielded so a cancelled caller never aborts a teardown others wait on
        await asyncio.shield(self._release)


class _TaskRun:
    """In-memory state of one task currently executing in this process."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.lease: Optional[WorkspaceLease] = None
        self.stage_task: Optional[asyncio.Task] = None
        self.approval = asyncio.Event()
        self.resumed = asyncio.Event()
        self.resumed.set()
        self.interrupted = asyncio.Event()
        self.reason: Optional[str] = None  # "cancelled" | "container-died"
        self.message: Optional[str] = None
        self.finished = asyncio.Event()
        self.owner: Optional[asyncio.Task] = None

    @property
    def container_id(self) -> Optional[str]:
        return self.lease.handle.container_id if self.lease else None

    def interrupt(self, reason: str, message: Optional[str] = None) -> None:
        if self.reason == "cancelled":
            return
        self.reason = reason
        self.message = message
        self.interrupted.set()
        if self.stage_task is not None and not self.stage_task.done():
            self.stage_task.cancel()

    def reset(self) -> None:
        if self.reason == "cancelled":
            return
        self.interrupted.clear()
        self.reason = None
        self.message = None
        self.stage_task = None
        self.lease = None


class TaskOrchestrator:
    """Drives tasks through the status machine."""

    def __init__(
        self,
        store: TaskStore,
        workspaces: WorkspaceManager,
        stage_runner: StageRunner,
        catalog: WorkflowCatalog,
        container_manager: Optional[ContainerManager] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.workspaces = workspaces
        self.stage_runner = stage_runner
        self.catalog = catalog
        self.container_manager = container_manager
        self.settings = config or settings
        self.events = EventBus()

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._runs: dict[str, _TaskRun] = {}
        self._background: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_tasks)
        self._runner_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.health_monitor: Optional[ContainerHealthMonitor] = None

        if container_manager is not None:
            self._unsubscribe = container_manager.on("container:died", self._on_container_died)
            self.health_monitor = ContainerHealthMonitor(
                container_manager,
                interval=self.settings.health_check_interval,
                max_failures=self.settings.health_max_failures,
            )

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to orchestrator events. Returns an unsubscribe callable."""
        return self.events.on(event_type, handler)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start container event and health monitoring (each when enabled)."""
        if self.health_monitor is not None and self.settings.health_monitoring:
            await self.health_monitor.start()
        if self.container_manager is not None and self.settings.events_monitoring:
            await self.container_manager.start_events_monitoring(
                EventsMonitorOptions(label_filters={MANAGED_LABEL: "true"})
            )

    async def stop(self) -> None:
        """Stop the task runner, cancel running tasks and stop monitoring."""
        await self.stop_task_runner()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self.health_monitor is not None:
            await self.health_monitor.stop()
        if self.container_manager is not None:
            await self.container_manager.stop_events_monitoring()

    # -------------------------------------------------------------------------
    # Task CRUD
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        description: str,
        *,
        workflow: str = "feature",
        autonomy: Union[AutonomyLevel, str] = AutonomyLevel.FULL,
        priority: Union[TaskPriority, str] = TaskPriority.NORMAL,
        acceptance_criteria: Optional[str] = None,
        max_retries: Optional[int] = None,
        depends_on: Optional[Iterable[str]] = None,
        project_path: Optional[Union[str, Path]] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """Validate and persist a new task in ``pending``.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            ConfigurationError: The workflow references an undefined agent.
            TaskNotFoundError: A dependency does not exist.
        """
        validate_workflow(self.catalog, workflow)

        dependencies = list(dict.fromkeys(depends_on or []))
        for dep in dependencies:
            if self.store.get_task(dep) is None:
                raise TaskNotFoundError(dep)

        task_id = task_id or generate_task_id()
        task = Task(
            id=task_id,
            description=description,
            acceptance_criteria=acceptance_criteria,
            workflow=workflow,
            autonomy=AutonomyLevel(autonomy),
            priority=TaskPriority(priority),
            project_path=str(project_path or self.settings.project_path),
            branch_name=generate_branch_name(self.settings.branch_prefix, task_id, description),
            max_retries=self.settings.max_retries if max_retries is None else max_retries,
            depends_on=dependencies,
        )
        task.blocked_by = self._unmet_dependencies(task)
        self.store.create_task(task)

        logger.info(f"Task {task.id} created ({workflow}): {description[:80]}")
        await self.events.emit("task:created", task)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get_task(task_id)

    def list_tasks(
        self,
        status: Union[TaskStatus, str, Iterable[Union[TaskStatus, str]], None] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        return self.store.list_tasks(status=status, limit=limit)

    async def update_task_status(
        self,
        task_id: str,
        status: Union[TaskStatus, str],
        error: Optional[str] = None,
    ) -> Task:
        """Move a task to ``status`` through the transition table.

        Pausing, resuming, approving and cancelling go through the matching
        control methods so a running task obeys them. Other statuses of a
        running task are driven by its run only and raise
        ``InvalidTransitionError`` here.
        """
        status = TaskStatus(status)
        current = self._require(task_id).status

        if status == TaskStatus.CANCELLED:
            await self.cancel_task(task_id)
            return self._require(task_id)
        if status == TaskStatus.PAUSED:
            return await self.pause_task(task_id)
        if status == TaskStatus.IN_PROGRESS and current == TaskStatus.PAUSED:
            return await self.resume_task(task_id)
        if status == TaskStatus.IN_PROGRESS and current == TaskStatus.WAITING_APPROVAL:
            return await self.approve_task(task_id)
        if task_id in self._runs:
            raise InvalidTransitionError(task_id, current.value, status.value)

        fields = {"error": error} if error is not None else {}
        task = await self._transition(task_id, status, **fields)
        if status == TaskStatus.COMPLETED:
            await self.events.emit("task:completed", task)
            await self._release_dependents(task_id)
        return task

    async def delete_task(self, task_id: str) -> bool:
        if task_id in self._runs:
            await self.cancel_task(task_id)
        deleted = self.store.delete_task(task_id)
        self._locks.pop(task_id, None)
        return deleted

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def start_task(self, task_id: str, **kwargs: Any) -> asyncio.Task:
        """Run ``execute`` in the background."""
        task = asyncio.create_task(self._execute_logged(task_id, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _execute_logged(self, task_id: str, **kwargs: Any) -> None:
        try:
            await self.execute(task_id, **kwargs)
        except asyncio.CancelledError:
            raise
        except ApexError as e:
            logger.warning(f"Task {task_id} not executed: {e}")
        except Exception:
            logger.exception(f"Unexpected error executing task {task_id}")

    async def execute(
        self,
        task_id: str,
        strategy: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
        keep_workspace: Optional[bool] = None,
    ) -> Task:
        """Run a task to a settled state and return its final record.

        A task with incomplete dependencies is left ``queued`` with
        ``blocked_by`` set; execute it again (or let the task runner pick it
        up) once the dependencies complete.
        """
        if task_id in self._runs:
            logger.warning(f"Task {task_id} is already running")
            return self._require(task_id)

        run = _TaskRun(task_id)
        run.owner = asyncio.current_task()
        self._runs[task_id] = run
        try:
            task = self._require(task_id)
            if task.status == TaskStatus.PENDING:
                task = await self._transition(task_id, TaskStatus.QUEUED)
            elif task.status != TaskStatus.QUEUED:
                raise InvalidTransitionError(task_id, task.status.value, TaskStatus.PLANNING.value)

            unmet = self._unmet_dependencies(task)
            if unmet:
                return await self._block(task_id, unmet)

            if not await self._interruptible(run, self._semaphore.acquire()):
                return self._require(task_id)
            try:
                keep = self.settings.keep_workspace_on_failure if keep_workspace is None else keep_workspace
                await self._run_with_retries(run, strategy, dict(overrides or {}), keep)
            finally:
                self._semaphore.release()
        finally:
            if run.stage_task is not None and not run.stage_task.done():
                run.stage_task.cancel()
            await self._release(run)
            self._runs.pop(task_id, None)
            run.finished.set()

        return self._require(task_id)

    async def _run_with_retries(
        self,
        run: _TaskRun,
        strategy: Optional[str],
        overrides: dict[str, Any],
        keep_on_failure: bool,
    ) -> None:
        task_id = run.task_id
        while True:
            failure = await self._attempt(run, strategy, overrides)
            if failure is None or run.reason == "cancelled":
                return

            message, retryable = failure
            task = self._require(task_id)
            if not retryable or task.retry_count >= task.max_retries:
                await self._release(run, keep=keep_on_failure)
                logger.error(f"Task {task_id} failed permanently: {message}")
                return

            await self._release(run)
            run.reset()
            delay = self.settings.retry_delay_seconds * (
                self.settings.retry_backoff_factor ** task.retry_count
            )
            if delay > 0 and not await self._interruptible(run, asyncio.sleep(delay)):
                return

            try:
                task = await self._transition(task_id, TaskStatus.QUEUED)
            except InvalidTransitionError:
                task = self._require(task_id)
                # Already re-queued through retry_task
                if task.status != TaskStatus.QUEUED:
                    return
            logger.info(f"Retrying task {task_id} ({task.retry_count}/{task.max_retries})")
            await self.events.emit(
                "task:retried", {"task_id": task_id, "retry_count": task.retry_count}
            )

    async def _attempt(
        self,
        run: _TaskRun,
        strategy: Optional[str],
        overrides: dict[str, Any],
    ) -> AttemptFailure:
        """One pass through planning, workspace acquisition and the stages."""
        task_id = run.task_id
        try:
            task = await self._transition(task_id, TaskStatus.PLANNING)
            workflow = validate_workflow(self.catalog, task.workflow)
            agents = self.catalog.get_agents()

            handle = await self.workspaces.acquire(
                task, strategy or self.settings.workspace_strategy, overrides
            )
            run.lease = WorkspaceLease(handle, self._release_handle)
            if run.interrupted.is_set():
                return self._interrupted(run)

            task = await self._advance(
                run, TaskStatus.IN_PROGRESS, workspace_strategy=handle.strategy.value
            )
            if task is None:
                return self._interrupted(run)
            await self.events.emit("task:started", {"task_id": task_id, "workspace": handle})

            stage_names = [stage.name for stage in workflow.stages]
            start = stage_names.index(task.current_stage) if task.current_stage in stage_names else 0
            outputs: dict[str, str] = {}

            for index in range(start, len(workflow.stages)):
                stage = workflow.stages[index]

                if task.autonomy == AutonomyLevel.MANUAL and index > start:
                    if not await self._await_approval(run, stage.name):
                        return self._interrupted(run)
                if not await self._interruptible(run, run.resumed.wait()):
                    return self._interrupted(run)

                async with self._locks[task_id]:
                    task = self.store.update_task(task_id, current_stage=stage.name)
                await self.events.emit(
                    "task:stage-changed", {"task_id": task_id, "stage": stage.name, "index": index}
                )

                context = StageContext(
                    task=task,
                    workflow=workflow,
                    stage=stage,
                    agent=agents[stage.agent],
                    workspace=handle,
                    stage_index=index,
                    previous_outputs=dict(outputs),
                )
                if run.interrupted.is_set():
                    return self._interrupted(run)
                run.stage_task = asyncio.create_task(self.stage_runner.run_stage(context))
                await asyncio.wait({run.stage_task})
                if run.stage_task.cancelled() or run.interrupted.is_set():
                    return self._interrupted(run)
                result = run.stage_task.result()
                run.stage_task = None

                task = await self._record_stage(task_id, stage.name, result)
                if not result.success:
                    return await self._fail(
                        run, f"Stage '{stage.name}' failed: {result.error}", result.retryable
                    )
                outputs[stage.name] = result.output

            task = await self._advance(run, TaskStatus.COMPLETED)
            if task is None:
                return self._interrupted(run)

        except DependencyUnmetError as e:
            logger.info(str(e))
            return None
        except InvalidTransitionError as e:
            if run.interrupted.is_set():
                return self._interrupted(run)
            logger.warning(f"Task {task_id} stopped: {e}")
            return None
        except (BudgetExceededError, ConfigurationError) as e:
            return await self._fail(run, str(e), retryable=False)
        except WorkspaceError as e:
            retryable = not isinstance(e.cause, (RuntimeUnavailableError, ConfigurationError))
            return await self._fail(run, str(e), retryable=retryable)
        except ApexError as e:
            return await self._fail(run, str(e), retryable=True)
        except Exception as e:
            logger.exception(f"Unexpected error in task {task_id}")
            return await self._fail(run, f"{type(e).__name__}: {e}", retryable=True)

        logger.info(f"Task {task_id} completed")
        await self.events.emit("task:completed", task)
        await self._release(run)
        await self._release_dependents(task_id)
        return None

    async def _await_approval(self, run: _TaskRun, next_stage: str) -> bool:
        run.approval.clear()
        task = await self._advance(
            run,
            TaskStatus.WAITING_APPROVAL,
            log=f"Waiting for approval before stage '{next_stage}'",
        )
        if task is None:
            return False
        return await self._interruptible(run, run.approval.wait())

    async def _record_stage(self, task_id: str, stage: str, result: StageResult) -> Task:
        cost = result.cost_usd
        if cost is None:
            cost = calculate_cost(
                result.input_tokens,
                result.output_tokens,
                self.settings.input_token_price,
                self.settings.output_token_price,
            )

        async with self._locks[task_id]:
            task = self._require(task_id)
            usage = task.usage.add(result.input_tokens, result.output_tokens, cost)
            outcome = "completed" if result.success else "failed"
            artifacts = list(dict.fromkeys([*task.artifacts, *result.artifacts]))
            task = self.store.update_task(
                task_id,
                usage=usage,
                logs=[*task.logs, *result.logs, f"Stage '{stage}' {outcome}"],
                artifacts=artifacts,
            )

        await self.events.emit("usage:updated", {"task_id": task_id, "usage": task.usage})

        if task.usage.estimated_cost > self.settings.max_cost_per_task:
            raise BudgetExceededError(
                task_id, task.usage.estimated_cost, self.settings.max_cost_per_task
            )
        return task

    async def _fail(self, run: _TaskRun, message: str, retryable: bool) -> AttemptFailure:
        task = await self._advance(run, TaskStatus.FAILED, error=message, log=message)
        if task is None:
            return self._interrupted(run)
        logger.error(f"Task {run.task_id} failed: {message}")
        await self.events.emit(
            "task:failed", {"task_id": run.task_id, "error": message, "retryable": retryable}
        )
        return message, retryable

    @staticmethod
    def _interrupted(run: _TaskRun) -> AttemptFailure:
        if run.reason == "container-died":
            return run.message or "Container died", True
        return None

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task and tear its workspace down.

        Returns False for unknown or already finished tasks. When the task is
        running, returns only after its workspace has been released.
        """
        task = self.store.get_task(task_id)
        if task is None:
            return False

        run = self._runs.get(task_id)
        if task.status == TaskStatus.CANCELLED:
            if run is None:
                return False
            # Another caller is already cancelling; wait for the same teardown
            await self._finish_cancel(run)
            return True
        if task.is_terminal:
            return False

        try:
            await self._transition(task_id, TaskStatus.CANCELLED, log="Task cancelled")
        except InvalidTransitionError:
            task = self._require(task_id)
            if task.status != TaskStatus.CANCELLED or run is None:
                return False
            await self._finish_cancel(run)
            return True

        logger.info(f"Task {task_id} cancelled")
        await self.events.emit("task:cancelled", {"task_id": task_id})
        if run is not None:
            await self._finish_cancel(run)
        return True

    async def _finish_cancel(self, run: _TaskRun) -> None:
        run.interrupt("cancelled")
        await self._release(run)
        if asyncio.current_task() is not run.owner:
            await run.finished.wait()

    async def retry_task(self, task_id: str) -> Task:
        """Re-queue a failed task.

        Raises:
            TaskNotFoundError: Unknown task.
            InvalidTransitionError: The task is not ``failed``.
            RetryExhaustedError: ``retry_count`` has reached ``max_retries``.
        """
        current = self._require(task_id).status
        if current != TaskStatus.FAILED:
            raise InvalidTransitionError(task_id, current.value, TaskStatus.QUEUED.value)
        task = await self._transition(task_id, TaskStatus.QUEUED)
        await self.events.emit(
            "task:retried", {"task_id": task_id, "retry_count": task.retry_count}
        )
        return task

    async def approve_task(self, task_id: str) -> Task:
        """Let a task waiting for approval continue with its next stage."""
        task = await self._transition(task_id, TaskStatus.IN_PROGRESS, log="Approved")
        run = self._runs.get(task_id)
        if run is not None:
            run.approval.set()
        return task

    async def pause_task(self, task_id: str) -> Task:
        """Hold a running task before its next stage."""
        run = self._runs.get(task_id)
        if run is not None:
            run.resumed.clear()
        try:
            return await self._transition(task_id, TaskStatus.PAUSED, log="Paused")
        except ApexError:
            if run is not None:
                run.resumed.set()
            raise

    async def resume_task(self, task_id: str) -> Task:
        task = await self._transition(task_id, TaskStatus.IN_PROGRESS, log="Resumed")
        run = self._runs.get(task_id)
        if run is not None:
            run.resumed.set()
        return task

    # -------------------------------------------------------------------------
    # Task runner
    # -------------------------------------------------------------------------

    async def start_task_runner(self, poll_interval: float = 1.0) -> None:
        """Start dispatching queued tasks whose dependencies are complete."""
        if self._runner_task and not self._runner_task.done():
            return

        self._runner_task = asyncio.create_task(self._run_tasks(poll_interval))
        logger.info("Task runner started")

    async def stop_task_runner(self) -> None:
        if self._runner_task:
            self._runner_task.cancel()
            try:
                await self._runner_task
            except asyncio.CancelledError:
                pass
            self._runner_task = None
            logger.info("Task runner stopped")

    def is_task_runner_active(self) -> bool:
        return self._runner_task is not None and not self._runner_task.done()

    async def _run_tasks(self, poll_interval: float) -> None:
        while True:
            try:
                await self.dispatch_ready_tasks()
                await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error dispatching tasks: {e}")
                await asyncio.sleep(poll_interval)

    async def dispatch_ready_tasks(self) -> list[str]:
        """Start every queued task that is free to run. Returns their ids."""
        queued = self.store.list_tasks(status=TaskStatus.QUEUED)
        queued.sort(key=lambda t: (_PRIORITY_RANK[t.priority], t.created_at))

        started = []
        for task in queued:
            if len(self._runs) >= self.settings.max_concurrent_tasks:
                break
            if task.id in self._runs or self._unmet_dependencies(task):
                continue
            self.start_task(task.id)
            started.append(task.id)
        return started

    async def wait_for_all_tasks(self) -> None:
        """Wait until no background execution is left."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_running_tasks(self) -> list[str]:
        return list(self._runs)

    async def get_system_status(self) -> dict[str, Any]:
        runtime = "none"
        monitoring = False
        if self.container_manager is not None:
            runtime = await self.container_manager.runtime.get_best_runtime()
            monitoring = self.container_manager.is_events_monitoring_active()

        return {
            "container_runtime": runtime,
            "events_monitoring": monitoring,
            "health_monitoring": self.health_monitor is not None and self.health_monitor.is_active(),
            "task_runner": self.is_task_runner_active(),
            "running_tasks": self.get_running_tasks(),
            "max_concurrent_tasks": self.settings.max_concurrent_tasks,
            "tasks": {status.value: self.store.count_tasks(status) for status in TaskStatus},
        }

    # -------------------------------------------------------------------------
    # Container events
    # -------------------------------------------------------------------------

    async def _on_container_died(self, event: ContainerDiedEvent) -> None:
        await self.events.emit("container:died", event)
        if not event.task_id:
            return

        task_id = event.task_id
        task = self.store.get_task(task_id)
        if task is None or task.status != TaskStatus.IN_PROGRESS:
            return

        details = [f"exit code {event.exit_code}"]
        if event.signal:
            details.append(f"signal {event.signal}")
        if event.oom_killed:
            details.append("OOM killed")
        message = f"Container {event.container_name or event.container_id[:12]} died ({', '.join(details)})"

        async with self._locks[task_id]:
            run = self._runs.get(task_id)
            if run is not None and run.container_id and event.container_id:
                current = run.container_id
                if not (current.startswith(event.container_id) or event.container_id.startswith(current)):
                    # A container from an earlier attempt
                    return
            try:
                previous, task = self._apply_transition(
                    task_id,
                    TaskStatus.FAILED,
                    message,
                    {"error": message, "exit_code": event.exit_code, "oom_killed": event.oom_killed},
                )
            except InvalidTransitionError:
                return
            # Interrupt before releasing the lock so the stage loop cannot
            # advance the task past this failure
            if run is not None:
                run.interrupt("container-died", message)

        await self._announce_transition(task_id, previous, TaskStatus.FAILED)
        logger.error(f"Task {task_id} failed: {message}")
        await self.events.emit(
            "task:failed",
            {
                "task_id": task_id,
                "error": message,
                "exit_code": event.exit_code,
                "oom_killed": event.oom_killed,
                "retryable": True,
            },
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _unmet_dependencies(self, task: Task) -> list[str]:
        unmet = []
        for dep in task.depends_on:
            dependency = self.store.get_task(dep)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                unmet.append(dep)
        return unmet

    async def _transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        log: Optional[str] = None,
        **fields: Any,
    ) -> Task:
        """Validate and persist one status change, then announce it."""
        async with self._locks[task_id]:
            previous, task = self._apply_transition(task_id, target, log, fields)
        await self._announce_transition(task_id, previous, target)
        return task

    def _apply_transition(
        self,
        task_id: str,
        target: TaskStatus,
        log: Optional[str],
        fields: dict[str, Any],
    ) -> tuple[TaskStatus, Task]:
        # Caller holds the task lock
        task = self._require(task_id)
        previous = task.status
        validate_transition(task_id, previous, target)

        changes: dict[str, Any] = dict(fields)
        if target == TaskStatus.PLANNING:
            unmet = self._unmet_dependencies(task)
            if unmet:
                self.store.update_task(task_id, blocked_by=unmet)
                raise DependencyUnmetError(task_id, unmet)
            changes["blocked_by"] = []
        elif target == TaskStatus.QUEUED and previous == TaskStatus.FAILED:
            if task.retry_count >= task.max_retries:
                raise RetryExhaustedError(task_id, task.retry_count, task.max_retries)
            changes["retry_count"] = task.retry_count + 1
        elif target == TaskStatus.COMPLETED:
            changes["completed_at"] = utcnow()

        changes["status"] = target
        if log:
            changes["logs"] = [*task.logs, log]
        return previous, self.store.update_task(task_id, changes)

    async def _announce_transition(
        self, task_id: str, previous: TaskStatus, target: TaskStatus
    ) -> None:
        logger.info(f"Task {task_id}: {previous.value} -> {target.value}")
        await self.events.emit(
            "task:status-changed",
            {"task_id": task_id, "previous": previous.value, "status": target.value},
        )

    async def _advance(self, run: _TaskRun, target: TaskStatus, **fields: Any) -> Optional[Task]:
        """Transition once the task is not paused; None if interrupted first."""
        while True:
            if not await self._interruptible(run, run.resumed.wait()):
                return None
            try:
                return await self._transition(run.task_id, target, **fields)
            except InvalidTransitionError:
                if run.interrupted.is_set():
                    return None
                # Paused between the wait and the transition
                if self._require(run.task_id).status == TaskStatus.PAUSED:
                    continue
                raise

    @staticmethod
    async def _interruptible(run: _TaskRun, awaitable: Awaitable[Any]) -> bool:
        """Await ``awaitable`` unless the run is interrupted first."""
        if run.interrupted.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return False
        target = asyncio.ensure_future(awaitable)
        interrupted = asyncio.ensure_future(run.interrupted.wait())
        try:
            await asyncio.wait({target, interrupted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            interrupted.cancel()
        if target.done() and not target.cancelled():
            return True
        target.cancel()
        return False

    async def _block(self, task_id: str, unmet: list[str]) -> Task:
        async with self._locks[task_id]:
            task = self.store.update_task(task_id, blocked_by=unmet)
        logger.info(f"Task {task_id} blocked by {', '.join(unmet)}")
        await self.events.emit("task:blocked", {"task_id": task_id, "blocked_by": unmet})
        return task

    async def _release_dependents(self, completed_id: str) -> None:
        for task in self.store.list_tasks(status=[TaskStatus.PENDING, TaskStatus.QUEUED]):
            if completed_id not in task.depends_on:
                continue
            unmet = self._unmet_dependencies(task)
            async with self._locks[task.id]:
                self.store.update_task(task.id, blocked_by=unmet)
            if unmet or task.status != TaskStatus.QUEUED:
                continue

            logger.info(f"Task {task.id} unblocked")
            await self.events.emit("task:unblocked", {"task_id": task.id})
            if self.is_task_runner_active() and task.id not in self._runs:
                self.start_task(task.id)

    async def _release(self, run: _TaskRun, keep: bool = False) -> None:
        if run.lease is not None:
            await run.lease.release(keep)

    async def _release_handle(self, handle: WorkspaceHandle, keep: bool) -> None:
        try:
            await self.workspaces.release(handle, keep=keep)
        except (ApexError, OSError) as e:
            logger.error(f"Failed to release workspace for task {handle.task_id}: {e}")
            try:
                async with self._locks[handle.task_id]:
                    self.store.append_log(handle.task_id, f"Workspace release failed: {e}")
            except TaskNotFoundError:
                pass


def create_orchestrator(config: Optional[Settings] = None) -> TaskOrchestrator:
    """Wire an orchestrator from settings."""
    config = config or settings
    container_manager = ContainerManager()
    workspaces = WorkspaceManager.create_default(
        container_manager,
        workspaces_dir=Path(config.workspaces_path),
        default_strategy=config.workspace_strategy,
    )
    return TaskOrchestrator(
        store=TaskStore(config.database_path),
        workspaces=workspaces,
        stage_runner=CLIStageRunner(workspaces),
        catalog=YamlWorkflowCatalog(Path(config.project_path)),
        container_manager=container_manager,
        config=config,
    )
