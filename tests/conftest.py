# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from apex_engine.config import Settings
from apex_engine.core.container_events import ContainerEventsMonitor
from apex_engine.core.container_manager import ContainerManager
from apex_engine.core.container_runtime import ContainerRuntime
from apex_engine.core.orchestrator import TaskOrchestrator
from apex_engine.core.workflows import (
    AgentDefinition,
    InMemoryWorkflowCatalog,
    StageDefinition,
    WorkflowDefinition,
)
from apex_engine.core.workspace import WorkspaceManager, WorkspaceStrategy
from apex_engine.db.store import TaskStore

from .fakes import (
    CountingBackend,
    FakeDockerClient,
    FakeEventSource,
    FakeStageRunner,
    docker_runner,
)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    (project / "README.md").write_text("hello\n", encoding="utf-8")
    return project


@pytest.fixture()
def config(tmp_path: Path, project_dir: Path) -> Settings:
    return Settings(
        project_path=project_dir,
        database_path=tmp_path / "apex.db",
        workspaces_path=tmp_path / "workspaces",
        workspace_strategy="none",
        events_monitoring=False,
        health_monitoring=False,
        max_retries=2,
        retry_delay_seconds=0,
        max_concurrent_tasks=3,
    )


@pytest.fixture()
def store(config: Settings):
    task_store = TaskStore(config.database_path)
    yield task_store
    task_store.close()


@pytest.fixture()
def catalog() -> InMemoryWorkflowCatalog:
    return InMemoryWorkflowCatalog(
        workflows=[
            WorkflowDefinition(
                name="feature",
                stages=[
                    StageDefinition(name="implementation", agent="developer"),
                    StageDefinition(name="testing", agent="tester"),
                ],
            )
        ],
        agents=[
            AgentDefinition(name="developer", description="Writes the code"),
            AgentDefinition(name="tester", description="Writes the tests"),
        ],
    )


@pytest.fixture()
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture()
def event_source() -> FakeEventSource:
    return FakeEventSource()


@pytest.fixture()
def container_manager(docker_client: FakeDockerClient, event_source: FakeEventSource) -> ContainerManager:
    runner = docker_runner()
    return ContainerManager(
        runtime=ContainerRuntime(command_runner=runner),
        client_factory=lambda name: docker_client,
        command_runner=runner,
        events_monitor=ContainerEventsMonitor(source_factory=lambda cmd: event_source),
        name_prefix="apex-task",
        operation_timeout=5.0,
    )


@pytest.fixture()
def backend(project_dir: Path) -> CountingBackend:
    return CountingBackend(project_dir)


@pytest.fixture()
def stage_runner() -> FakeStageRunner:
    return FakeStageRunner()


@pytest.fixture()
def orchestrator(
    store: TaskStore,
    backend: CountingBackend,
    stage_runner: FakeStageRunner,
    catalog: InMemoryWorkflowCatalog,
    container_manager: ContainerManager,
    config: Settings,
) -> TaskOrchestrator:
    workspaces = WorkspaceManager({WorkspaceStrategy.NONE: backend}, default_strategy="none")
    return TaskOrchestrator(
        store=store,
        workspaces=workspaces,
        stage_runner=stage_runner,
        catalog=catalog,
        container_manager=container_manager,
        config=config,
    )
