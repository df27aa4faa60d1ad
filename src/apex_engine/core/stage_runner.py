"""Stage runner port and the coding-CLI implementation.

The orchestrator hands each workflow stage to a ``StageRunner``. The bundled
``CLIStageRunner`` runs a coding CLI inside the task's workspace:
- Claude Code (``claude -p ... --output-format json``)
- Aider (``aider --message ...``)
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from apex_engine.core.errors import WorkspaceError
from apex_engine.core.task import Task
from apex_engine.core.workflows import AgentDefinition, StageDefinition, WorkflowDefinition
from apex_engine.core.workspace import ExecResult, WorkspaceHandle, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Everything a runner needs to execute one stage."""

    task: Task
    workflow: WorkflowDefinition
    stage: StageDefinition
    agent: AgentDefinition
    workspace: WorkspaceHandle
    stage_index: int = 0
    previous_outputs: dict[str, str] = field(default_factory=dict)


@dataclass
class StageResult:
    """Outcome of one stage; token counts and cost are deltas for this stage."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: Optional[float] = None
    artifacts: list[str] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    # Transient failures (crash, timeout) may be retried; bad output may not
    retryable: bool = True


class StageRunner(Protocol):
    async def run_stage(self, context: StageContext) -> StageResult: ...


def build_stage_prompt(context: StageContext) -> str:
    task = context.task
    prompt = f"# Task: {task.description}\n\n"
    if task.acceptance_criteria:
        prompt += f"## Acceptance Criteria\n{task.acceptance_criteria}\n\n"

    prompt += f"## Stage {context.stage_index + 1}/{len(context.workflow.stages)}: {context.stage.name}\n"
    if context.stage.description:
        prompt += f"{context.stage.description}\n"
    prompt += f"\nYou are the {context.agent.name} agent"
    prompt += f": {context.agent.description}\n" if context.agent.description else ".\n"

    if context.previous_outputs:
        prompt += "\n## Previous stages\n"
        for name, output in context.previous_outputs.items():
            prompt += f"### {name}\n{output[-2000:]}\n"

    if task.branch_name:
        prompt += f"\nWork on branch `{task.branch_name}`.\n"
    return prompt


_AIDER_TOKENS_RE = re.compile(
    r"Tokens:\s*([\d.]+)(k?)\s*sent,\s*([\d.]+)(k?)\s*received(?:.*?Cost:\s*\$([\d.]+)\s*message)?",
    re.IGNORECASE,
)
_FILE_CHANGE_RE = re.compile(r"^(?:Applied edit to|Wrote)\s+(\S+)", re.MULTILINE)


def _scaled(number: str, suffix: str) -> int:
    value = float(number)
    return int(value * 1000) if suffix.lower() == "k" else int(value)


def parse_claude_output(result: ExecResult) -> StageResult:
    """Parse ``claude --output-format json`` output."""
    try:
        data = json.loads(result.stdout.strip().splitlines()[-1]) if result.stdout.strip() else {}
    except ValueError:
        data = {}

    if not isinstance(data, dict) or not data:
        return StageResult(
            success=result.ok,
            output=result.stdout,
            error=None if result.ok else (result.stderr.strip() or f"exit code {result.exit_code}"),
        )

    usage = data.get("usage") or {}
    is_error = bool(data.get("is_error")) or not result.ok
    output = str(data.get("result", ""))
    return StageResult(
        success=not is_error,
        output=output,
        error=(output or result.stderr.strip() or f"exit code {result.exit_code}") if is_error else None,
        input_tokens=int(usage.get("input_tokens", 0) or 0),
        output_tokens=int(usage.get("output_tokens", 0) or 0),
        cost_usd=data.get("total_cost_usd", data.get("cost_usd")),
    )


def parse_aider_output(result: ExecResult) -> StageResult:
    input_tokens = output_tokens = 0
    cost = None
    for match in _AIDER_TOKENS_RE.finditer(result.stdout):
        input_tokens += _scaled(match.group(1), match.group(2))
        output_tokens += _scaled(match.group(3), match.group(4))
        if match.group(5):
            cost = (cost or 0.0) + float(match.group(5))

    return StageResult(
        success=result.ok,
        output=result.stdout,
        error=None if result.ok else (result.stderr.strip() or f"exit code {result.exit_code}"),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_usd=cost,
        artifacts=sorted(set(_FILE_CHANGE_RE.findall(result.stdout))),
    )


class CLIStageRunner:
    """Runs each stage through a coding CLI inside the task workspace."""

    SUPPORTED_CLIS = ("claude-code", "aider")

    def __init__(
        self,
        workspaces: WorkspaceManager,
        cli: str = "claude-code",
        timeout: float = 3600,
        default_model: Optional[str] = None,
    ):
        if cli not in self.SUPPORTED_CLIS:
            raise ValueError(f"Unknown CLI: {cli}. Supported: {', '.join(self.SUPPORTED_CLIS)}")
        self.workspaces = workspaces
        self.cli = cli
        self.timeout = timeout
        self.default_model = default_model

    def build_command(self, prompt: str, agent: AgentDefinition) -> list[str]:
        model = agent.model or self.default_model
        if self.cli == "claude-code":
            cmd = ["claude", "-p", prompt, "--output-format", "json"]
            if model:
                cmd.extend(["--model", model])
            tools = agent.tools or ["Edit", "Write", "Bash", "Read", "Glob", "Grep"]
            cmd.extend(["--allowedTools", ",".join(tools)])
            return cmd

        cmd = ["aider", "--message", prompt, "--yes", "--no-git"]
        if model:
            cmd.extend(["--model", model])
        return cmd

    async def run_stage(self, context: StageContext) -> StageResult:
        prompt = build_stage_prompt(context)
        cmd = self.build_command(prompt, context.agent)
        logger.info(f"Running stage {context.stage.name} of task {context.task.id} with {self.cli}")

        try:
            result = await self.workspaces.exec_in(context.workspace, cmd, timeout=self.timeout)
        except asyncio.TimeoutError:
            return StageResult(success=False, error=f"Stage timed out after {self.timeout} seconds")
        except FileNotFoundError:
            return StageResult(
                success=False, error=f"{self.cli} CLI not found", retryable=False
            )
        except WorkspaceError as e:
            return StageResult(success=False, error=str(e))

        if self.cli == "claude-code":
            parsed = parse_claude_output(result)
        else:
            parsed = parse_aider_output(result)

        parsed.logs.append(f"{context.stage.name}: {self.cli} exited with code {result.exit_code}")
        return parsed
