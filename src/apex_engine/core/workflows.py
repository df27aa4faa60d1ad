"""Workflow and agent definitions.

Projects describe their workflows in ``.apex/workflows/<name>.yaml`` and their
agents in ``.apex/agents.yaml``::

    # .apex/workflows/feature.yaml
    name: feature
    description: Implement a feature end to end
    stages:
      - name: implementation
        agent: developer
      - name: testing
        agent: tester

    # .apex/agents.yaml
    agents:
      developer:
        description: Writes the code
        model: sonnet
"""

import logging
from pathlib import Path
from typing import Optional, Protocol

import yaml
from pydantic import BaseModel, Field, ValidationError

from apex_engine.core.errors import ConfigurationError, WorkflowNotFoundError

logger = logging.getLogger(__name__)


class StageDefinition(BaseModel):
    """One stage of a workflow, handled by a single agent."""

    name: str
    agent: str
    description: Optional[str] = None


class WorkflowDefinition(BaseModel):
    name: str
    description: str = ""
    stages: list[StageDefinition] = Field(default_factory=list)


class AgentDefinition(BaseModel):
    name: str
    description: str = ""
    model: Optional[str] = None
    tools: list[str] = Field(default_factory=list)


class WorkflowCatalog(Protocol):
    """Source of workflow and agent definitions."""

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]: ...

    def get_agents(self) -> dict[str, AgentDefinition]: ...


def validate_workflow(catalog: WorkflowCatalog, name: str) -> WorkflowDefinition:
    """Look up ``name`` and check that every stage names a known agent.

    Raises:
        WorkflowNotFoundError: The catalogue has no such workflow.
        ConfigurationError: The workflow has no stages or references an
            undefined agent.
    """
    workflow = catalog.get_workflow(name)
    if workflow is None:
        raise WorkflowNotFoundError(name)
    if not workflow.stages:
        raise ConfigurationError(f"Workflow '{name}' has no stages")

    agents = catalog.get_agents()
    missing = sorted({stage.agent for stage in workflow.stages if stage.agent not in agents})
    if missing:
        raise ConfigurationError(f"Workflow '{name}' references undefined agents: {', '.join(missing)}")
    return workflow


class InMemoryWorkflowCatalog:
    """Catalogue built from definitions held in memory."""

    def __init__(
        self,
        workflows: Optional[list[WorkflowDefinition]] = None,
        agents: Optional[list[AgentDefinition]] = None,
    ):
        self._workflows = {w.name: w for w in workflows or []}
        self._agents = {a.name: a for a in agents or []}

    def add_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.name] = workflow

    def add_agent(self, agent: AgentDefinition) -> None:
        self._agents[agent.name] = agent

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(name)

    def get_agents(self) -> dict[str, AgentDefinition]:
        return dict(self._agents)

    def list_workflows(self) -> list[str]:
        return sorted(self._workflows)


class YamlWorkflowCatalog:
    """Reads definitions from a project's ``.apex`` directory on each lookup."""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path)
        self.config_dir = self.project_path / ".apex"
        self.workflows_dir = self.config_dir / "workflows"
        self.agents_file = self.config_dir / "agents.yaml"

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]:
        for suffix in (".yaml", ".yml"):
            path = self.workflows_dir / f"{name}{suffix}"
            if path.exists():
                data = self._load(path)
                data.setdefault("name", name)
                try:
                    return WorkflowDefinition.model_validate(data)
                except ValidationError as e:
                    raise ConfigurationError(f"Invalid workflow file {path}: {e}") from e
        return None

    def list_workflows(self) -> list[str]:
        if not self.workflows_dir.exists():
            return []
        return sorted(
            path.stem for path in self.workflows_dir.iterdir() if path.suffix in (".yaml", ".yml")
        )

    def get_agents(self) -> dict[str, AgentDefinition]:
        if not self.agents_file.exists():
            return {}
        data = self._load(self.agents_file)
        entries = data.get("agents", data)
        if not isinstance(entries, dict):
            raise ConfigurationError(f"Invalid agents file {self.agents_file}: expected a mapping")

        agents = {}
        for name, spec in entries.items():
            try:
                agents[name] = AgentDefinition.model_validate({"name": name, **(spec or {})})
            except (ValidationError, TypeError) as e:
                raise ConfigurationError(f"Invalid agent '{name}' in {self.agents_file}: {e}") from e
        return agents

    @staticmethod
    def _load(path: Path) -> dict:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
        logger.debug(f"Loaded {path}")
        return data
