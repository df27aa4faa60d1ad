# tests/fakes.py

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Optional, Union

from apex_engine.core.process import ProcessResult
from apex_engine.core.stage_runner import StageContext, StageResult
from apex_engine.core.task import Task
from apex_engine.core.workspace import ExecResult, WorkspaceHandle, WorkspaceStrategy
from python_on_whales.exceptions import NoSuchContainer

DOCKER_VERSION = ProcessResult(0, "Docker version 24.0.7, build afdd53b\n", "")
PODMAN_VERSION = ProcessResult(0, "podman version 4.9.3\n", "")


def docker_event(action: str, name: str, container_id: str = "abc123", **attributes: str) -> str:
    """One line of ``docker events --format '{{json .}}'`` output."""
    return json.dumps(
        {
            "status": action,
            "id": container_id,
            "from": "node:20",
            "Type": "container",
            "Action": action,
            "Actor": {
                "ID": container_id,
                "Attributes": {"image": "node:20", "name": name, **attributes},
            },
            "scope": "local",
            "time": 1700000000,
            "timeNano": 1700000000123456789,
        }
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeCommandRunner:
    """
    Command runner answering by argv prefix.

    The longest matching prefix wins. Unknown commands behave like a
    missing binary.
    """

    def __init__(self, responses: Optional[dict[tuple[str, ...], Any]] = None) -> None:
        self.responses: dict[tuple[str, ...], Union[ProcessResult, BaseException]] = dict(
            responses or {}
        )
        self.calls: list[list[str]] = []

    async def __call__(self, cmd, cwd=None, timeout=None, env=None) -> ProcessResult:
        cmd = list(cmd)
        self.calls.append(cmd)
        for key in sorted(self.responses, key=len, reverse=True):
            if tuple(cmd[: len(key)]) == key:
                response = self.responses[key]
                if isinstance(response, BaseException):
                    raise response
                return response
        raise FileNotFoundError(cmd[0])


def docker_runner(responses: Optional[dict[tuple[str, ...], Any]] = None) -> FakeCommandRunner:
    """A host where only docker answers, plus any extra canned commands."""
    return FakeCommandRunner({("docker",): DOCKER_VERSION, **(responses or {})})


def make_container(
    container_id: str,
    name: str,
    image: str,
    status: str = "created",
    labels: Optional[dict[str, str]] = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=container_id,
        name=name,
        created=None,
        state=SimpleNamespace(
            status=status,
            running=status == "running",
            exit_code=0,
            oom_killed=False,
            health=None,
            started_at=None,
            finished_at=None,
        ),
        config=SimpleNamespace(image=image, labels=dict(labels or {})),
    )


class FakeContainerCLI:
    """Stand-in for ``DockerClient.container`` that records every call."""

    def __init__(self) -> None:
        self.containers: dict[str, SimpleNamespace] = {}
        self.calls: list[tuple[str, tuple, dict]] = []
        self.fail: dict[str, Exception] = {}
        self.exec_results: list[Any] = []
        self.start_status = "running"
        self.create_delay = 0.0

    def _record(self, op: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((op, args, kwargs))
        if op in self.fail:
            raise self.fail[op]

    def ops(self) -> list[str]:
        return [op for op, _, _ in self.calls]

    def create(self, image, command=(), **kwargs):
        if self.create_delay:
            time.sleep(self.create_delay)
        self._record("create", image, command, **kwargs)
        container_id = f"{len(self.containers) + 1:012x}" + "f" * 52
        container = make_container(
            container_id, kwargs.get("name", ""), image, "created", kwargs.get("labels")
        )
        self.containers[container_id] = container
        return container

    def _get(self, container_id: str) -> SimpleNamespace:
        for known_id, container in self.containers.items():
            if known_id.startswith(container_id) or container.name == container_id:
                return container
        raise NoSuchContainer(["docker", "inspect", container_id], 1, b"", b"Error: No such container")

    def start(self, container_id):
        self._record("start", container_id)
        container = self._get(container_id)
        container.state.status = self.start_status
        container.state.running = self.start_status == "running"

    def stop(self, container_id, time=None):
        self._record("stop", container_id, time=time)
        container = self._get(container_id)
        container.state.status = "exited"
        container.state.running = False

    def remove(self, container_id, force=False):
        self._record("remove", container_id, force=force)
        container = self._get(container_id)
        self.containers.pop(container.id, None)

    def inspect(self, container_id):
        return self._get(container_id)

    def execute(self, container_id, command, **kwargs):
        self._record("execute", container_id, command, **kwargs)
        result = self.exec_results.pop(0) if self.exec_results else ""
        if isinstance(result, BaseException):
            raise result
        return result

    def list(self, all=False):
        return [c for c in self.containers.values() if all or c.state.running]


class FakeDockerClient:
    def __init__(self) -> None:
        self.container = FakeContainerCLI()
        self.builds: list[tuple[str, dict]] = []

    def legacy_build(self, context, **kwargs):
        self.builds.append((str(context), kwargs))


class FakeEventSource:
    """Event source fed by the test; ``close()`` ends the stream."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes] = asyncio.Queue()
        self.started = False
        self.stopped = False

    def push(self, chunk: Union[bytes, str]) -> None:
        self.queue.put_nowait(chunk.encode() if isinstance(chunk, str) else chunk)

    def close(self) -> None:
        self.queue.put_nowait(b"")

    async def start(self) -> None:
        self.started = True

    async def read(self) -> bytes:
        return await self.queue.get()

    async def stop(self) -> None:
        self.stopped = True


class FakeStageRunner:
    """
    Stage runner returning scripted results.

    The first ``hold`` calls wait on ``release`` before answering, which lets
    tests act while a stage is in flight.
    """

    def __init__(self, results: Optional[list[Any]] = None, hold: int = 0) -> None:
        self.results = list(results or [])
        self.hold = hold
        self.calls: list[StageContext] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run_stage(self, context: StageContext) -> StageResult:
        self.calls.append(context)
        index = len(self.calls)
        self.started.set()
        if index <= self.hold:
            await self.release.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return StageResult(
            success=True,
            output=f"{context.stage.name} done",
            input_tokens=1000,
            output_tokens=500,
        )


class CountingBackend:
    """Isolation backend that only counts acquire/release calls."""

    def __init__(self, project_path: Path, with_container: bool = False) -> None:
        self.project_path = project_path
        self.with_container = with_container
        self.acquired: list[str] = []
        self.released: list[WorkspaceHandle] = []
        self.release_delay = 0.01

    async def acquire(self, task: Task, overrides: dict[str, Any]) -> WorkspaceHandle:
        self.acquired.append(task.id)
        container_id = f"container-{len(self.acquired)}" if self.with_container else None
        return WorkspaceHandle(
            task_id=task.id,
            strategy=WorkspaceStrategy.NONE,
            path=self.project_path,
            container_id=container_id,
        )

    async def release(self, handle: WorkspaceHandle) -> None:
        # Yield so concurrent callers overlap with the teardown
        await asyncio.sleep(self.release_delay)
        self.released.append(handle)

    async def exec_in(self, handle, command, working_dir=None, timeout=None) -> ExecResult:
        return ExecResult(0, "", "")
