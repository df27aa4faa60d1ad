"""Workspace isolation for task execution.

Four backends, selected by strategy tag:
- container: a task container with the project mounted at /workspace
- worktree: a git worktree on the task branch
- directory: a plain copy of the project tree
- none: the project path itself (no isolation)
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

from apex_engine.config import settings
from apex_engine.core.container_manager import (
    ContainerConfig,
    ContainerManager,
    ResourceLimits,
)
from apex_engine.core.errors import ApexError, WorkspaceError
from apex_engine.core.process import CommandRunner, run_command
from apex_engine.core.task import Task

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"


class WorkspaceStrategy(str, Enum):
    """Workspace isolation strategies."""

    CONTAINER = "container"
    WORKTREE = "worktree"
    DIRECTORY = "directory"
    NONE = "none"


@dataclass
class WorkspaceHandle:
    """One task bound to one isolation resource."""

    task_id: str
    strategy: WorkspaceStrategy
    path: Path
    container_id: Optional[str] = None
    branch: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class IsolationBackend(Protocol):
    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle: ...

    async def release(self, handle: WorkspaceHandle) -> None: ...

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult: ...


async def _exec_local(
    run: CommandRunner,
    cwd: Path,
    command: Union[str, Sequence[str]],
    working_dir: Optional[str],
    timeout: Optional[float],
) -> ExecResult:
    argv = ["sh", "-c", command] if isinstance(command, str) else list(command)
    target = cwd / working_dir if working_dir else cwd
    result = await run(argv, cwd=target, timeout=timeout)
    return ExecResult(result.returncode, result.stdout, result.stderr)


# =============================================================================
# Backends
# =============================================================================


class ContainerIsolation:
    """Runs the task inside a dedicated container."""

    strategy = WorkspaceStrategy.CONTAINER

    def __init__(self, manager: ContainerManager):
        self.manager = manager

    def build_config(self, task: Task, overrides: dict[str, Any]) -> ContainerConfig:
        """Settings defaults plus per-invocation overrides (image, cpu, memory)."""
        project = str(Path(task.project_path).resolve())
        return ContainerConfig(
            image=overrides.get("image") or settings.container_image,
            dockerfile=overrides.get("dockerfile"),
            build_context=overrides.get("build_context"),
            # Keep the container alive for exec sessions
            command=overrides.get("command") or ["tail", "-f", "/dev/null"],
            resource_limits=ResourceLimits(
                cpu=overrides.get("cpu", settings.container_cpu),
                memory=overrides.get("memory", settings.container_memory),
            ),
            network_mode=overrides.get("network_mode", settings.container_network_mode),
            environment={"APEX_TASK_ID": task.id, **overrides.get("environment", {})},
            volumes={project: CONTAINER_WORKDIR},
            working_dir=CONTAINER_WORKDIR,
            auto_remove=overrides.get("auto_remove", settings.container_auto_remove),
        )

    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle:
        config = self.build_config(task, overrides)
        result = await self.manager.create_container(config, task.id, auto_start=True)
        if not result.success:
            raise WorkspaceError(
                self.strategy.value,
                result.error_message or "container could not be started",
                cause=result.error,
            )

        return WorkspaceHandle(
            task_id=task.id,
            strategy=self.strategy,
            path=Path(CONTAINER_WORKDIR),
            container_id=result.container_id,
            branch=task.branch_name,
            metadata={"image": config.image},
        )

    async def release(self, handle: WorkspaceHandle) -> None:
        if not handle.container_id:
            return
        stopped = await self.manager.stop_container(handle.container_id)
        if not stopped.success:
            logger.warning(f"Stopping {handle.container_id[:12]} failed: {stopped.error_message}")
        removed = await self.manager.remove_container(handle.container_id, force=True)
        if not removed.success:
            raise WorkspaceError(
                self.strategy.value, removed.error_message or "remove failed", cause=removed.error
            )

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        workdir = CONTAINER_WORKDIR
        if working_dir:
            workdir = working_dir if working_dir.startswith("/") else f"{CONTAINER_WORKDIR}/{working_dir}"
        result = await self.manager.exec_command(
            handle.container_id or "", command, working_dir=workdir, timeout=timeout
        )
        if not result.success:
            raise WorkspaceError(
                self.strategy.value, result.error_message or "exec failed", cause=result.error
            )
        return ExecResult(result.exit_code or 0, result.stdout or "", result.stderr or "")


class WorktreeIsolation:
    """Git worktree on the task branch, sharing the project's object store."""

    strategy = WorkspaceStrategy.WORKTREE

    def __init__(self, workspaces_dir: Path, command_runner: CommandRunner = run_command):
        self.workspaces_dir = workspaces_dir
        self._run = command_runner

    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle:
        repo = Path(task.project_path).resolve()
        worktree = self.workspaces_dir / "worktrees" / f"task-{task.id}"
        branch = task.branch_name or f"{settings.branch_prefix}{task.id}"

        if worktree.exists():
            # Left over from an earlier attempt of the same task
            await self._remove_worktree(repo, worktree)
        worktree.parent.mkdir(parents=True, exist_ok=True)

        exists = await self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
        if exists.ok:
            args = ["worktree", "add", str(worktree), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(worktree), overrides.get("base", "HEAD")]

        result = await self._git(args, repo)
        if not result.ok:
            raise WorkspaceError(self.strategy.value, f"git worktree add failed: {result.stderr.strip()}")

        return WorkspaceHandle(
            task_id=task.id,
            strategy=self.strategy,
            path=worktree,
            branch=branch,
            metadata={"repository": str(repo)},
        )

    async def release(self, handle: WorkspaceHandle) -> None:
        repo = Path(handle.metadata.get("repository", "."))
        await self._remove_worktree(repo, handle.path)

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        return await _exec_local(self._run, handle.path, command, working_dir, timeout)

    async def _remove_worktree(self, repo: Path, worktree: Path) -> None:
        result = await self._git(["worktree", "remove", "--force", str(worktree)], repo)
        if not result.ok:
            logger.warning(f"git worktree remove failed for {worktree}: {result.stderr.strip()}")
            if worktree.exists():
                await asyncio.to_thread(shutil.rmtree, worktree, True)
            await self._git(["worktree", "prune"], repo)

    async def _git(self, args: list[str], cwd: Path):
        try:
            return await self._run(["git", *args], cwd=cwd)
        except FileNotFoundError as e:
            raise WorkspaceError(self.strategy.value, "git is not installed", cause=e) from e


class DirectoryIsolation:
    """Plain copy of the project tree, without the .git directory."""

    strategy = WorkspaceStrategy.DIRECTORY

    def __init__(self, workspaces_dir: Path, command_runner: CommandRunner = run_command):
        self.workspaces_dir = workspaces_dir
        self._run = command_runner

    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle:
        source = Path(task.project_path).resolve()
        target = self.workspaces_dir / "directories" / f"task-{task.id}"

        def copy() -> None:
            if target.exists():
                shutil.rmtree(target)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, target, ignore=shutil.ignore_patterns(".git", ".apex"))

        try:
            await asyncio.to_thread(copy)
        except OSError as e:
            raise WorkspaceError(self.strategy.value, f"copy of {source} failed: {e}", cause=e) from e

        return WorkspaceHandle(
            task_id=task.id,
            strategy=self.strategy,
            path=target,
            branch=task.branch_name,
            metadata={"source": str(source)},
        )

    async def release(self, handle: WorkspaceHandle) -> None:
        if handle.path.exists():
            await asyncio.to_thread(shutil.rmtree, handle.path)

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        return await _exec_local(self._run, handle.path, command, working_dir, timeout)


class NoIsolation:
    """Works directly in the project directory."""

    strategy = WorkspaceStrategy.NONE

    def __init__(self, command_runner: CommandRunner = run_command):
        self._run = command_runner

    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle:
        logger.warning(f"Task {task.id} runs without workspace isolation in {task.project_path}")
        return WorkspaceHandle(
            task_id=task.id,
            strategy=self.strategy,
            path=Path(task.project_path).resolve(),
            branch=task.branch_name,
        )

    async def release(self, handle: WorkspaceHandle) -> None:
        return None

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        return await _exec_local(self._run, handle.path, command, working_dir, timeout)


# =============================================================================
# Manager
# =============================================================================


class WorkspaceManager:
    """Dispatches workspace operations to the backend for each strategy."""

    def __init__(
        self,
        backends: dict[WorkspaceStrategy, IsolationBackend],
        default_strategy: Union[WorkspaceStrategy, str, None] = None,
    ):
        self.backends = dict(backends)
        self.default_strategy = WorkspaceStrategy(default_strategy or settings.workspace_strategy)

    @classmethod
    def create_default(
        cls,
        container_manager: ContainerManager,
        workspaces_dir: Optional[Path] = None,
        default_strategy: Union[WorkspaceStrategy, str, None] = None,
    ) -> "WorkspaceManager":
        workspaces_dir = workspaces_dir or settings.workspaces_path
        return cls(
            {
                WorkspaceStrategy.CONTAINER: ContainerIsolation(container_manager),
                WorkspaceStrategy.WORKTREE: WorktreeIsolation(workspaces_dir),
                WorkspaceStrategy.DIRECTORY: DirectoryIsolation(workspaces_dir),
                WorkspaceStrategy.NONE: NoIsolation(),
            },
            default_strategy,
        )

    def resolve_strategy(self, strategy: Union[WorkspaceStrategy, str, None]) -> WorkspaceStrategy:
        try:
            resolved = WorkspaceStrategy(strategy) if strategy else self.default_strategy
        except ValueError as e:
            raise WorkspaceError(str(strategy), "unknown workspace strategy") from e
        if resolved not in self.backends:
            raise WorkspaceError(resolved.value, "no backend registered")
        return resolved

    async def acquire(
        self,
        task: Task,
        strategy: Union[WorkspaceStrategy, str, None] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> WorkspaceHandle:
        """Create the workspace for ``task``.

        Raises:
            WorkspaceError: The backend could not set the workspace up. The
                underlying structured error is available as ``cause``.
        """
        resolved = self.resolve_strategy(strategy)
        try:
            handle = await self.backends[resolved].acquire(task, dict(overrides or {}))
        except WorkspaceError:
            raise
        except (ApexError, OSError) as e:
            raise WorkspaceError(resolved.value, str(e), cause=e) from e

        logger.info(f"Workspace ({resolved.value}) acquired for task {task.id}: {handle.path}")
        return handle

    async def release(self, handle: WorkspaceHandle, keep: bool = False) -> None:
        if keep:
            logger.info(f"Keeping {handle.strategy.value} workspace for task {handle.task_id}: {handle.path}")
            return
        await self.backends[handle.strategy].release(handle)
        logger.info(f"Workspace ({handle.strategy.value}) released for task {handle.task_id}")

    async def exec_in(
        self,
        handle: WorkspaceHandle,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        return await self.backends[handle.strategy].exec_in(handle, command, working_dir, timeout)
