"""Container management for task workspaces.

Uses python-on-whales for engine interactions, pointed at whichever binary
``ContainerRuntime`` detects (docker or podman). Expected failures come back
as ``ContainerOperationResult`` objects rather than exceptions.
"""

import asyncio
import json
import logging
import re
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence, Union

from pydantic import BaseModel, Field
from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException, NoSuchContainer

from apex_engine.config import settings
from apex_engine.core.container_events import (
    ContainerEvent,
    ContainerEventsMonitor,
    ContainerRegistry,
    EventsMonitorOptions,
)
from apex_engine.core.container_runtime import ContainerRuntime
from apex_engine.core.errors import (
    ApexError,
    ConfigurationError,
    ContainerOperationError,
    RuntimeUnavailableError,
)
from apex_engine.core.events import EventBus, EventHandler
from apex_engine.core.process import CommandRunner, run_command

logger = logging.getLogger(__name__)

MANAGED_LABEL = "apex.managed"
TASK_ID_LABEL = "apex.task-id"
CONTAINER_NAME_LABEL = "apex.container-name"

_MEMORY_RE = re.compile(r"^\d+(\.\d+)?[bkmgBKMG]?$")
_ENGINE_ERROR_RE = re.compile(
    r"^(error response from daemon|cannot connect to the (docker|podman)|"
    r"error:.*(no such container|is not running|container state improper|"
    r"can only create exec sessions on running containers))",
    re.IGNORECASE,
)
# Exit status of `docker exec` / `podman exec` when the engine itself failed
_ENGINE_EXIT_CODE = 125


def _is_engine_error(exc: DockerException) -> bool:
    """Whether a failed exec was refused by the engine instead of run."""
    if exc.return_code == _ENGINE_EXIT_CODE:
        return True
    lines = (exc.stderr or "").strip().splitlines()
    return bool(lines) and _ENGINE_ERROR_RE.search(lines[0]) is not None


# =============================================================================
# Configuration
# =============================================================================


class ResourceLimits(BaseModel):
    """Resource limits for a container."""

    cpu: Optional[float] = None
    memory: Optional[str] = None
    memory_reservation: Optional[str] = None
    memory_swap: Optional[str] = None
    cpu_shares: Optional[int] = None
    pids_limit: Optional[int] = None


class ContainerConfig(BaseModel):
    """Configuration for a task container."""

    image: Optional[str] = None
    dockerfile: Optional[str] = None
    build_context: Optional[str] = None
    command: list[str] = Field(default_factory=list)
    entrypoint: Optional[str] = None
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network_mode: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict)
    # host path -> container path, optionally suffixed with ":ro" / ":rw"
    volumes: dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None
    user: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    privileged: bool = False
    security_opts: list[str] = Field(default_factory=list)
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)
    auto_remove: bool = False

    def validate_for_create(self) -> None:
        """Raise ``ConfigurationError`` if the engine would reject this config."""
        if not self.image and not self.dockerfile:
            raise ConfigurationError("Container config needs an image or a dockerfile")

        limits = self.resource_limits
        if limits.cpu is not None and limits.cpu <= 0:
            raise ConfigurationError(f"Invalid cpu limit: {limits.cpu}")
        for name in ("memory", "memory_reservation"):
            value = getattr(limits, name)
            if value is not None and not _MEMORY_RE.match(value):
                raise ConfigurationError(f"Invalid {name} value: {value!r}")
        if (
            limits.memory_swap is not None
            and limits.memory_swap != "-1"
            and not _MEMORY_RE.match(limits.memory_swap)
        ):
            raise ConfigurationError(f"Invalid memory_swap value: {limits.memory_swap!r}")
        if limits.cpu_shares is not None and limits.cpu_shares < 0:
            raise ConfigurationError(f"Invalid cpu_shares: {limits.cpu_shares}")
        if limits.pids_limit is not None and limits.pids_limit == 0:
            raise ConfigurationError("pids_limit must be positive or -1 for unlimited")


def _volume_specs(volumes: dict[str, str]) -> list[tuple[str, ...]]:
    specs: list[tuple[str, ...]] = []
    for host_path, container_path in volumes.items():
        target, _, mode = container_path.partition(":")
        specs.append((host_path, target, mode) if mode else (host_path, target))
    return specs


def build_create_options(
    config: ContainerConfig,
    name: str,
    labels: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Translate a ``ContainerConfig`` into ``container.create`` keyword arguments.

    Each key maps onto one engine flag (``cpus`` -> ``--cpus``, ``memory`` ->
    ``--memory`` and so on). Unset options are omitted.
    """
    options: dict[str, Any] = {"name": name}
    limits = config.resource_limits

    if config.volumes:
        options["volumes"] = _volume_specs(config.volumes)
    if config.environment:
        options["envs"] = dict(config.environment)

    if limits.memory:
        options["memory"] = limits.memory
    if limits.memory_reservation:
        options["memory_reservation"] = limits.memory_reservation
    if limits.memory_swap:
        options["memory_swap"] = limits.memory_swap
    if limits.cpu:
        options["cpus"] = float(limits.cpu)
    if limits.cpu_shares:
        options["cpu_shares"] = limits.cpu_shares
    if limits.pids_limit:
        options["pids_limit"] = limits.pids_limit

    if config.network_mode:
        options["networks"] = [config.network_mode]
    if config.working_dir:
        options["workdir"] = config.working_dir
    if config.user:
        options["user"] = config.user
    if config.entrypoint:
        options["entrypoint"] = config.entrypoint

    all_labels = {**config.labels, **(labels or {})}
    if all_labels:
        options["labels"] = all_labels

    if config.auto_remove:
        options["remove"] = True
    if config.privileged:
        options["privileged"] = True
    if config.security_opts:
        options["security_options"] = list(config.security_opts)
    if config.cap_add:
        options["cap_add"] = list(config.cap_add)
    if config.cap_drop:
        options["cap_drop"] = list(config.cap_drop)

    return options


# =============================================================================
# Results and events
# =============================================================================


@dataclass
class ContainerInfo:
    """Point-in-time view of one container."""

    id: str
    name: str
    image: str
    status: str
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    oom_killed: bool = False
    health: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerStats:
    cpu_percent: float
    memory_percent: float
    pids: int
    memory_usage: Optional[str] = None


@dataclass
class ContainerOperationResult:
    """Outcome of a container operation."""

    success: bool
    container_id: Optional[str] = None
    container_info: Optional[ContainerInfo] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    stats: Optional[ContainerStats] = None
    error: Optional[ApexError] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error else None


@dataclass
class ContainerLifecycleEvent:
    container_id: str
    timestamp: datetime
    success: bool
    error: Optional[str] = None


@dataclass
class ContainerDiedEvent:
    task_id: Optional[str]
    container_id: str
    container_name: str
    exit_code: Optional[int]
    signal: Optional[str]
    oom_killed: bool
    timestamp: datetime


def _signal_from_exit_code(exit_code: Optional[int]) -> Optional[str]:
    if exit_code is None or exit_code <= 128:
        return None
    try:
        return signal.Signals(exit_code - 128).name
    except ValueError:
        return None


def _parse_percent(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().rstrip("%") or 0)
    except ValueError:
        return 0.0


_STATUSES = ("created", "running", "paused", "restarting", "removing", "exited", "dead")
# Podman spellings
_STATUS_ALIASES = {"configured": "created", "stopped": "exited", "initialized": "created"}


def _parse_status(status: str) -> str:
    status = (status or "").lower().strip()
    if status in _STATUSES:
        return status
    if status.startswith("up"):
        return "running"
    return _STATUS_ALIASES.get(status, "exited")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    # Engines report the zero time for containers that never started/finished
    if value.year <= 1:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Manager
# =============================================================================


class ContainerManager:
    """Creates and manages task containers for one container engine."""

    def __init__(
        self,
        runtime: Optional[ContainerRuntime] = None,
        client_factory: Optional[Callable[[str], DockerClient]] = None,
        command_runner: CommandRunner = run_command,
        events_monitor: Optional[ContainerEventsMonitor] = None,
        registry: Optional[ContainerRegistry] = None,
        name_prefix: Optional[str] = None,
        operation_timeout: Optional[float] = None,
        build_timeout: float = 600.0,
    ):
        self.runtime = runtime or ContainerRuntime()
        self._client_factory = client_factory or (lambda name: DockerClient(client_call=[name]))
        self._run = command_runner
        self.events_monitor = events_monitor or ContainerEventsMonitor()
        self.registry = registry or ContainerRegistry()
        self.name_prefix = name_prefix or settings.container_name_prefix
        self.operation_timeout = operation_timeout or settings.container_operation_timeout
        self.build_timeout = build_timeout
        self.events = EventBus()

        self._clients: dict[str, DockerClient] = {}
        self._oom_marked: set[str] = set()

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        return self.events.on(event_type, handler)

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    def generate_container_name(self, task_id: str) -> str:
        """``<prefix>-<task id>`` with characters the engine rejects replaced."""
        sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "_", task_id)
        return f"{self.name_prefix}-{sanitized}"

    def task_id_from_name(self, name: str) -> Optional[str]:
        prefix = f"{self.name_prefix}-"
        name = name.lstrip("/")
        if name.startswith(prefix) and len(name) > len(prefix):
            return name[len(prefix):]
        return None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_container(
        self,
        config: ContainerConfig,
        task_id: str,
        auto_start: bool = False,
        name_override: Optional[str] = None,
    ) -> ContainerOperationResult:
        """Create (and optionally start) the container for a task."""
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        try:
            config.validate_for_create()
        except ConfigurationError as e:
            return ContainerOperationResult(success=False, error=e)

        name = name_override or self.generate_container_name(task_id)

        image = config.image
        if config.dockerfile:
            tag = f"{name.lower()}:latest"
            build = await self.build_image(config, tag)
            if not build.success:
                return build
            image = tag

        options = build_create_options(
            config,
            name,
            labels={
                MANAGED_LABEL: "true",
                TASK_ID_LABEL: task_id,
                CONTAINER_NAME_LABEL: name,
            },
        )

        try:
            container = await self._call(
                client.container.create, image, list(config.command), **options
            )
        except (DockerException, asyncio.TimeoutError) as e:
            error = self._operation_error("create", e)
            logger.error(f"Failed to create container {name}: {error}")
            await self._emit_lifecycle("container:created", name, error)
            return ContainerOperationResult(success=False, error=error, stderr=error.stderr)

        container_id = container.id
        self.registry.register(name, task_id, container_id)
        logger.info(f"Created container {name} ({container_id[:12]}) for task {task_id}")
        await self._emit_lifecycle("container:created", container_id)

        if auto_start:
            started = await self.start_container(container_id)
            if not started.success and config.auto_remove:
                await self.remove_container(container_id, force=True)
            return started

        return ContainerOperationResult(
            success=True,
            container_id=container_id,
            container_info=await self.get_container_info(container_id),
        )

    async def build_image(self, config: ContainerConfig, tag: str) -> ContainerOperationResult:
        """Build ``tag`` from ``config.dockerfile`` and ``config.build_context``."""
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        context = config.build_context or "."
        logger.info(f"Building image {tag} from {config.dockerfile} (context {context})")
        try:
            await self._call(
                client.legacy_build,
                context,
                file=config.dockerfile,
                tags=[tag],
                timeout=self.build_timeout,
            )
        except (DockerException, asyncio.TimeoutError) as e:
            error = self._operation_error("build", e)
            logger.error(f"Image build failed for {tag}: {error}")
            return ContainerOperationResult(success=False, error=error, stderr=error.stderr)

        return ContainerOperationResult(success=True)

    async def start_container(self, container_id: str) -> ContainerOperationResult:
        """Start a container and confirm the engine reports it running."""
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        try:
            await self._call(client.container.start, container_id)
        except (DockerException, asyncio.TimeoutError) as e:
            error = self._operation_error("start", e, container_id)
            await self._emit_lifecycle("container:started", container_id, error)
            return ContainerOperationResult(
                success=False, container_id=container_id, error=error, stderr=error.stderr
            )

        info = await self.get_container_info(container_id)
        if info is None or info.status != "running":
            status = info.status if info else "unknown"
            detail = f"container is {status}"
            if info is not None and info.exit_code is not None:
                detail += f" (exit code {info.exit_code})"
            error = ContainerOperationError("start", detail, container_id=container_id)
            await self._emit_lifecycle("container:started", container_id, error)
            return ContainerOperationResult(
                success=False, container_id=container_id, container_info=info, error=error
            )

        await self._emit_lifecycle("container:started", container_id)
        return ContainerOperationResult(success=True, container_id=container_id, container_info=info)

    async def stop_container(
        self, container_id: str, timeout: Optional[int] = None
    ) -> ContainerOperationResult:
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        grace = settings.container_stop_timeout if timeout is None else timeout
        try:
            await self._call(
                client.container.stop,
                container_id,
                time=grace,
                timeout=self.operation_timeout + grace,
            )
        except (DockerException, asyncio.TimeoutError) as e:
            error = self._operation_error("stop", e, container_id)
            await self._emit_lifecycle("container:stopped", container_id, error)
            return ContainerOperationResult(
                success=False, container_id=container_id, error=error, stderr=error.stderr
            )

        await self._emit_lifecycle("container:stopped", container_id)
        return ContainerOperationResult(success=True, container_id=container_id)

    async def remove_container(
        self, container_id: str, force: bool = False
    ) -> ContainerOperationResult:
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        try:
            await self._call(client.container.remove, container_id, force=force)
        except (DockerException, asyncio.TimeoutError) as e:
            error = self._operation_error("remove", e, container_id)
            await self._emit_lifecycle("container:removed", container_id, error)
            return ContainerOperationResult(
                success=False, container_id=container_id, error=error, stderr=error.stderr
            )

        self._forget(container_id)
        await self._emit_lifecycle("container:removed", container_id)
        return ContainerOperationResult(success=True, container_id=container_id)

    async def exec_command(
        self,
        container_id: str,
        command: Union[str, Sequence[str]],
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ContainerOperationResult:
        """Run a command inside a running container.

        A non-zero exit of the command itself is a successful call with
        ``exit_code`` set. Only engine-level problems are ``success=False``.
        """
        client = await self._get_client()
        if client is None:
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        argv = ["sh", "-c", command] if isinstance(command, str) else list(command)
        kwargs: dict[str, Any] = {}
        if working_dir:
            kwargs["workdir"] = working_dir

        try:
            output = await self._call(
                client.container.execute,
                container_id,
                argv,
                timeout=timeout or self.operation_timeout,
                **kwargs,
            )
        except NoSuchContainer as e:
            error = self._operation_error("exec", e, container_id)
            return ContainerOperationResult(
                success=False, container_id=container_id, error=error, stderr=error.stderr
            )
        except DockerException as e:
            stderr = e.stderr or ""
            if _is_engine_error(e):
                error = self._operation_error("exec", e, container_id)
                return ContainerOperationResult(
                    success=False, container_id=container_id, error=error, stderr=stderr
                )
            return ContainerOperationResult(
                success=True,
                container_id=container_id,
                stdout=e.stdout or "",
                stderr=stderr,
                exit_code=e.return_code,
            )
        except asyncio.TimeoutError as e:
            error = self._operation_error("exec", e, container_id)
            return ContainerOperationResult(success=False, container_id=container_id, error=error)

        return ContainerOperationResult(
            success=True,
            container_id=container_id,
            stdout=output if isinstance(output, str) else str(output or ""),
            stderr="",
            exit_code=0,
        )

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def get_container_info(self, container_id: str) -> Optional[ContainerInfo]:
        """Inspect a container; ``None`` if it does not exist."""
        client = await self._get_client()
        if client is None:
            return None

        try:
            container = await self._call(client.container.inspect, container_id)
        except (DockerException, asyncio.TimeoutError):
            return None

        return self._to_info(container)

    async def list_managed_containers(self, include_exited: bool = False) -> list[ContainerInfo]:
        """All containers carrying the managed label or name prefix."""
        client = await self._get_client()
        if client is None:
            return []

        try:
            containers = await self._call(client.container.list, all=include_exited)
        except (DockerException, asyncio.TimeoutError) as e:
            logger.warning(f"Could not list containers: {e}")
            return []

        infos = []
        for container in containers:
            info = self._to_info(container)
            if info.labels.get(MANAGED_LABEL) == "true" or self.task_id_from_name(info.name):
                infos.append(info)
        return infos

    async def get_stats(self, container_id: str) -> ContainerOperationResult:
        """Point-in-time CPU, memory and pid usage."""
        runtime = await self.runtime.get_best_runtime()
        if runtime == "none":
            return ContainerOperationResult(success=False, error=RuntimeUnavailableError())

        cmd = [runtime, "stats", "--no-stream", "--format", "{{json .}}", container_id]
        try:
            result = await self._run(cmd, timeout=self.operation_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            error = ContainerOperationError("stats", str(e) or "timed out", container_id=container_id)
            return ContainerOperationResult(success=False, container_id=container_id, error=error)

        if not result.ok:
            error = ContainerOperationError(
                "stats",
                result.stderr.strip() or f"exit code {result.returncode}",
                container_id=container_id,
                stderr=result.stderr,
                exit_code=result.returncode,
            )
            return ContainerOperationResult(success=False, container_id=container_id, error=error)

        try:
            stats = self._parse_stats(result.stdout)
        except ValueError as e:
            error = ContainerOperationError("stats", f"unparseable output: {e}", container_id=container_id)
            return ContainerOperationResult(success=False, container_id=container_id, error=error)

        return ContainerOperationResult(success=True, container_id=container_id, stats=stats)

    @staticmethod
    def _parse_stats(output: str) -> ContainerStats:
        line = next((line for line in output.splitlines() if line.strip()), "")
        data = json.loads(line)
        # podman may print a one-element array
        if isinstance(data, list):
            if not data:
                raise ValueError("empty stats output")
            data = data[0]
        if not isinstance(data, dict):
            raise ValueError("stats output is not an object")

        cpu = data.get("CPUPerc", data.get("cpu_percent", data.get("CPU", 0)))
        mem = data.get("MemPerc", data.get("mem_percent", 0))
        pids = data.get("PIDs", data.get("pids", data.get("PIDS", 0)))
        usage = data.get("MemUsage", data.get("mem_usage"))
        try:
            pid_count = int(str(pids).strip() or 0)
        except ValueError:
            pid_count = 0

        return ContainerStats(
            cpu_percent=_parse_percent(cpu),
            memory_percent=_parse_percent(mem),
            pids=pid_count,
            memory_usage=str(usage) if usage is not None else None,
        )

    # -------------------------------------------------------------------------
    # Events monitoring
    # -------------------------------------------------------------------------

    async def start_events_monitoring(
        self, options: Optional[EventsMonitorOptions] = None
    ) -> bool:
        """Start tailing the engine event stream. Returns False without a runtime."""
        runtime = await self.runtime.get_best_runtime()
        if runtime == "none":
            logger.warning("Events monitoring not started: no container runtime")
            return False

        await self.events_monitor.start(runtime, self._handle_runtime_event, options)
        return True

    async def stop_events_monitoring(self) -> None:
        await self.events_monitor.stop()

    def is_events_monitoring_active(self) -> bool:
        return self.events_monitor.is_active()

    def _is_managed(self, event: ContainerEvent) -> bool:
        if self.registry.task_id_for(event.container_name, event.container_id):
            return True
        if event.attributes.get(MANAGED_LABEL) == "true":
            return True
        return self.task_id_from_name(event.container_name) is not None

    def _resolve_task_id(self, event: ContainerEvent) -> Optional[str]:
        return (
            self.registry.task_id_for(event.container_name, event.container_id)
            or event.attributes.get(TASK_ID_LABEL)
            or self.task_id_from_name(event.container_name)
        )

    async def _handle_runtime_event(self, event: ContainerEvent) -> None:
        if not self._is_managed(event):
            return

        key = event.container_id or event.container_name
        if event.action == "oom":
            self._oom_marked.add(key)
            logger.warning(f"Container {event.container_name or key} ran out of memory")
            return

        if event.action != "die":
            logger.debug(f"Container {event.container_name or key}: {event.action}")
            return

        attrs = {k.lower(): v for k, v in event.attributes.items()}
        oom_killed = (
            attrs.get("oomkilled", "").lower() in ("true", "1")
            or attrs.get("reason", "").lower() == "oom"
            or key in self._oom_marked
        )
        self._oom_marked.discard(key)

        died = ContainerDiedEvent(
            task_id=self._resolve_task_id(event),
            container_id=event.container_id,
            container_name=event.container_name,
            exit_code=event.exit_code,
            signal=attrs.get("signal") or _signal_from_exit_code(event.exit_code),
            oom_killed=oom_killed,
            timestamp=event.timestamp,
        )
        logger.info(
            f"Container {died.container_name or died.container_id} died "
            f"(task={died.task_id}, exit={died.exit_code}, signal={died.signal}, oom={died.oom_killed})"
        )
        await self.events.emit("container:died", died)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_client(self) -> Optional[DockerClient]:
        runtime = await self.runtime.get_best_runtime()
        if runtime == "none":
            return None
        if runtime not in self._clients:
            self._clients[runtime] = self._client_factory(runtime)
        return self._clients[runtime]

    async def _call(
        self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any
    ) -> Any:
        """Run a blocking python-on-whales call in a thread with a bounded wait."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=timeout or self.operation_timeout,
        )

    def _operation_error(
        self,
        operation: str,
        exc: BaseException,
        container_id: Optional[str] = None,
    ) -> ContainerOperationError:
        if isinstance(exc, asyncio.TimeoutError):
            return ContainerOperationError(
                operation, "timed out waiting for the container engine", container_id=container_id
            )
        if isinstance(exc, DockerException):
            stderr = (exc.stderr or "").strip()
            return ContainerOperationError(
                operation,
                stderr or f"engine exited with code {exc.return_code}",
                container_id=container_id,
                stderr=stderr,
                exit_code=exc.return_code,
            )
        return ContainerOperationError(operation, str(exc), container_id=container_id)

    async def _emit_lifecycle(
        self, event_type: str, container_id: str, error: Optional[ApexError] = None
    ) -> None:
        await self.events.emit(
            event_type,
            ContainerLifecycleEvent(
                container_id=container_id,
                timestamp=_now(),
                success=error is None,
                error=str(error) if error else None,
            ),
        )

    def _forget(self, container_id: str) -> None:
        self.registry.unregister(container_id=container_id)
        self._oom_marked.discard(container_id)

    def _to_info(self, container: Any) -> ContainerInfo:
        state = getattr(container, "state", None)
        config = getattr(container, "config", None)
        health = getattr(state, "health", None) if state is not None else None
        status = getattr(state, "status", None) or ("running" if getattr(state, "running", False) else "")
        return ContainerInfo(
            id=container.id,
            name=(getattr(container, "name", "") or container.id).lstrip("/"),
            image=getattr(config, "image", None) or str(getattr(container, "image", "unknown")),
            status=_parse_status(str(status)),
            created_at=_aware(getattr(container, "created", None)),
            started_at=_aware(getattr(state, "started_at", None)),
            finished_at=_aware(getattr(state, "finished_at", None)),
            exit_code=getattr(state, "exit_code", None),
            oom_killed=bool(getattr(state, "oom_killed", False)),
            health=getattr(health, "status", None) if health is not None else None,
            labels=dict(getattr(config, "labels", None) or {}),
        )
