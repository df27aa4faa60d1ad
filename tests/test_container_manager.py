# tests/test_container_manager.py

from __future__ import annotations

import pytest
from python_on_whales.exceptions import DockerException, NoSuchContainer

from apex_engine.core.container_manager import (
    MANAGED_LABEL,
    TASK_ID_LABEL,
    ContainerConfig,
    ContainerManager,
    ResourceLimits,
    build_create_options,
)
from apex_engine.core.container_runtime import ContainerRuntime
from apex_engine.core.errors import ConfigurationError, ContainerOperationError
from apex_engine.core.process import ProcessResult

from .fakes import FakeDockerClient, docker_runner


def test_create_options_map_resource_limits() -> None:
    config = ContainerConfig(
        image="node:20",
        resource_limits=ResourceLimits(cpu=2, memory="4g", pids_limit=256),
        environment={"A": "1"},
        volumes={"/src": "/workspace", "/cache": "/cache:ro"},
        network_mode="bridge",
        working_dir="/workspace",
        auto_remove=True,
    )

    options = build_create_options(config, "apex-task-t1", labels={MANAGED_LABEL: "true"})

    assert options["name"] == "apex-task-t1"
    assert options["cpus"] == 2.0
    assert options["memory"] == "4g"
    assert options["pids_limit"] == 256
    assert options["envs"] == {"A": "1"}
    assert options["volumes"] == [("/src", "/workspace"), ("/cache", "/cache", "ro")]
    assert options["networks"] == ["bridge"]
    assert options["workdir"] == "/workspace"
    assert options["remove"] is True
    assert options["labels"] == {MANAGED_LABEL: "true"}


def test_create_options_omit_unset_values() -> None:
    options = build_create_options(ContainerConfig(image="node:20"), "n")
    assert options == {"name": "n"}


@pytest.mark.parametrize(
    "limits",
    [
        ResourceLimits(memory="lots"),
        ResourceLimits(cpu=0),
        ResourceLimits(memory_swap="2x"),
        ResourceLimits(pids_limit=0),
    ],
)
def test_invalid_limits_are_configuration_errors(limits: ResourceLimits) -> None:
    with pytest.raises(ConfigurationError):
        ContainerConfig(image="node:20", resource_limits=limits).validate_for_create()


def test_config_needs_image_or_dockerfile() -> None:
    with pytest.raises(ConfigurationError):
        ContainerConfig().validate_for_create()


def test_container_names_are_sanitized_and_reversible(container_manager: ContainerManager) -> None:
    name = container_manager.generate_container_name("task/1:x")

    assert name == "apex-task-task_1_x"
    assert container_manager.task_id_from_name("/apex-task-123-abc") == "123-abc"
    assert container_manager.task_id_from_name("postgres") is None


@pytest.mark.asyncio
async def test_create_and_start_registers_container(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    lifecycle = []
    container_manager.on("container:created", lifecycle.append)
    container_manager.on("container:started", lifecycle.append)

    result = await container_manager.create_container(
        ContainerConfig(image="node:20", command=["tail", "-f", "/dev/null"]), "t1", auto_start=True
    )

    assert result.success
    assert result.container_info.status == "running"
    op, args, kwargs = docker_client.container.calls[0]
    assert op == "create"
    assert args == ("node:20", ["tail", "-f", "/dev/null"])
    assert kwargs["name"] == "apex-task-t1"
    assert kwargs["labels"][TASK_ID_LABEL] == "t1"
    assert container_manager.registry.task_id_for("apex-task-t1") == "t1"
    assert [event.success for event in lifecycle] == [True, True]


@pytest.mark.asyncio
async def test_invalid_config_never_reaches_engine(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    config = ContainerConfig(image="node:20", resource_limits=ResourceLimits(memory="lots"))

    result = await container_manager.create_container(config, "t1")

    assert result.success is False
    assert isinstance(result.error, ConfigurationError)
    assert docker_client.container.calls == []


@pytest.mark.asyncio
async def test_failed_auto_start_removes_auto_remove_container(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    docker_client.container.start_status = "exited"

    result = await container_manager.create_container(
        ContainerConfig(image="node:20", auto_remove=True), "t1", auto_start=True
    )

    assert result.success is False
    assert isinstance(result.error, ContainerOperationError)
    assert docker_client.container.ops() == ["create", "start", "remove"]
    assert docker_client.container.calls[-1][2] == {"force": True}
    assert len(container_manager.registry) == 0


@pytest.mark.asyncio
async def test_failed_auto_start_keeps_container_without_auto_remove(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    docker_client.container.start_status = "exited"

    result = await container_manager.create_container(
        ContainerConfig(image="node:20"), "t1", auto_start=True
    )

    assert result.success is False
    assert docker_client.container.ops() == ["create", "start"]


@pytest.mark.asyncio
async def test_engine_error_on_create_is_returned(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    docker_client.container.fail["create"] = DockerException(
        ["docker", "create"], 125, b"", b"Error response from daemon: pull access denied"
    )

    result = await container_manager.create_container(ContainerConfig(image="nope"), "t1")

    assert result.success is False
    assert "pull access denied" in result.error_message


@pytest.mark.asyncio
async def test_slow_engine_call_times_out(docker_client: FakeDockerClient) -> None:
    docker_client.container.create_delay = 0.5
    manager = ContainerManager(
        runtime=ContainerRuntime(command_runner=docker_runner()),
        client_factory=lambda name: docker_client,
        operation_timeout=0.05,
    )

    result = await manager.create_container(ContainerConfig(image="node:20"), "t1")

    assert result.success is False
    assert "timed out" in result.error_message


@pytest.mark.asyncio
async def test_exec_distinguishes_command_and_engine_failures(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    created = await container_manager.create_container(ContainerConfig(image="node:20"), "t1")
    container_id = created.container_id
    docker_client.container.exec_results = [
        "hello\n",
        DockerException(["docker", "exec"], 2, b"", b"grep: pattern not found"),
        DockerException(["docker", "exec"], 126, b"", b"Error response from daemon: container abc is not running"),
        NoSuchContainer(["docker", "exec"], 1, b"", b"Error: No such container: abc"),
    ]

    ok = await container_manager.exec_command(container_id, "echo hello")
    failed_command = await container_manager.exec_command(container_id, ["grep", "x"], working_dir="/workspace")
    not_running = await container_manager.exec_command(container_id, "true")
    missing = await container_manager.exec_command(container_id, "true")

    assert ok.success and ok.exit_code == 0 and ok.stdout == "hello\n"
    assert failed_command.success and failed_command.exit_code == 2
    assert not_running.success is False
    assert missing.success is False

    first_exec = [call for call in docker_client.container.calls if call[0] == "execute"][0]
    assert first_exec[1][1] == ["sh", "-c", "echo hello"]
    second_exec = [call for call in docker_client.container.calls if call[0] == "execute"][1]
    assert second_exec[2] == {"workdir": "/workspace"}


@pytest.mark.asyncio
async def test_exec_output_mentioning_engine_errors_is_a_command_failure(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    created = await container_manager.create_container(ContainerConfig(image="node:20"), "t1")
    docker_client.container.exec_results = [
        DockerException(["docker", "exec"], 1, b"", b"health check: no such container 'db'\n"),
        DockerException(["docker", "exec"], 125, b"", b"unexpected engine failure"),
    ]

    command_failed = await container_manager.exec_command(created.container_id, "./check.sh")
    engine_failed = await container_manager.exec_command(created.container_id, "./check.sh")

    assert command_failed.success is True
    assert command_failed.exit_code == 1
    assert "no such container" in command_failed.stderr
    assert engine_failed.success is False


@pytest.mark.asyncio
async def test_stop_and_remove_forget_container(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    created = await container_manager.create_container(
        ContainerConfig(image="node:20"), "t1", auto_start=True
    )

    stopped = await container_manager.stop_container(created.container_id, timeout=3)
    removed = await container_manager.remove_container(created.container_id, force=True)

    assert stopped.success and removed.success
    assert ("stop", (created.container_id,), {"time": 3}) in docker_client.container.calls
    assert container_manager.registry.task_id_for("apex-task-t1") is None
    assert await container_manager.get_container_info(created.container_id) is None


@pytest.mark.asyncio
async def test_list_managed_containers_filters_by_label(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    await container_manager.create_container(ContainerConfig(image="node:20"), "t1", auto_start=True)
    docker_client.container.create("postgres:16", name="db")

    running = await container_manager.list_managed_containers()
    everything = await container_manager.list_managed_containers(include_exited=True)

    assert [info.name for info in running] == ["apex-task-t1"]
    assert [info.name for info in everything] == ["apex-task-t1"]


@pytest.mark.asyncio
async def test_build_image_from_dockerfile(
    container_manager: ContainerManager, docker_client: FakeDockerClient
) -> None:
    config = ContainerConfig(dockerfile="Dockerfile.dev", build_context="/src")

    result = await container_manager.create_container(config, "t1")

    assert result.success
    context, kwargs = docker_client.builds[0]
    assert context == "/src"
    assert kwargs == {"file": "Dockerfile.dev", "tags": ["apex-task-t1:latest"]}
    assert docker_client.container.calls[0][1][0] == "apex-task-t1:latest"


@pytest.mark.asyncio
async def test_stats_parse_docker_and_podman_output(docker_client: FakeDockerClient) -> None:
    docker_stats = '{"CPUPerc":"12.50%","MemPerc":"3.25%","PIDs":"7","MemUsage":"130MiB / 4GiB"}\n'
    podman_stats = '[{"cpu_percent":"1.5%","mem_percent":"0.5%","pids":"3","mem_usage":"20MB / 2GB"}]\n'
    runner = docker_runner({("docker", "stats"): ProcessResult(0, docker_stats, "")})
    manager = ContainerManager(
        runtime=ContainerRuntime(command_runner=runner),
        client_factory=lambda name: docker_client,
        command_runner=runner,
    )

    result = await manager.get_stats("abc")

    assert result.success
    assert result.stats.cpu_percent == pytest.approx(12.5)
    assert result.stats.memory_percent == pytest.approx(3.25)
    assert result.stats.pids == 7
    assert runner.calls[-1] == ["docker", "stats", "--no-stream", "--format", "{{json .}}", "abc"]

    podman = ContainerManager._parse_stats(podman_stats)
    assert podman.cpu_percent == pytest.approx(1.5)
    assert podman.pids == 3
    assert podman.memory_usage == "20MB / 2GB"


@pytest.mark.asyncio
async def test_stats_failure_is_reported(docker_client: FakeDockerClient) -> None:
    runner = docker_runner({("docker", "stats"): ProcessResult(1, "", "Error: No such container: abc")})
    manager = ContainerManager(
        runtime=ContainerRuntime(command_runner=runner),
        client_factory=lambda name: docker_client,
        command_runner=runner,
    )

    result = await manager.get_stats("abc")

    assert result.success is False
    assert "No such container" in result.error_message
