"""Workflow definitions stored as TOML files.

A workflow file looks like::

    name = "feature"
    description = "Plan, build, review"

    [[phases]]
    name = "plan"
    prompt = "Write an implementation plan."
    approval = "after"

    [[phases]]
    name = "build"
    prompt = "Implement the plan."
    allowed_tools = ["Read", "Edit", "Bash"]

    [phases.config]
    relay = "previous"
    loop_to = 1
    max_iterations = 3

Phase ordinals follow file order.
"""

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from conductor.errors import WorkflowDefinitionError
from conductor.models import (
    RELAY_MODES,
    GitStrategy,
    Phase,
    PhaseConfig,
    Repo,
    Workflow,
    Workspace,
    new_id,
)
from conductor.state.store import Store

APPROVAL_POLICIES = ("none", "before", "after")


@dataclass(slots=True)
class PhaseDefinition:
    name: str
    prompt: str
    approval: str = "none"
    allowed_tools: list[str] | None = None
    agents: dict[str, Any] | None = None
    config: PhaseConfig = field(default_factory=PhaseConfig)


@dataclass(slots=True)
class WorkflowDefinition:
    name: str
    phases: list[PhaseDefinition]
    description: str | None = None


def _phase_config(data: Any, where: str, ordinal: int) -> PhaseConfig:
    if data is None:
        return PhaseConfig()
    if not isinstance(data, dict):
        raise WorkflowDefinitionError(f"{where}: config must be a table")
    if "relay" in data and data["relay"] not in RELAY_MODES:
        raise WorkflowDefinitionError(f"{where}: relay must be one of {', '.join(RELAY_MODES)}")
    condition = data.get("loop_condition", "agent_signal")
    if condition not in ("agent_signal", "approval"):
        raise WorkflowDefinitionError(f"{where}: loop_condition must be agent_signal or approval")
    loop_to = data.get("loop_to")
    if loop_to is not None and (
        not isinstance(loop_to, int) or isinstance(loop_to, bool) or not 0 <= loop_to <= ordinal
    ):
        raise WorkflowDefinitionError(
            f"{where}: loop_to must point at this phase or an earlier one (0..{ordinal})"
        )
    max_iterations = data.get("max_iterations")
    if max_iterations is not None and (not isinstance(max_iterations, int) or max_iterations < 1):
        raise WorkflowDefinitionError(f"{where}: max_iterations must be a positive integer")
    strategy = data.get("git_strategy")
    if strategy is not None and (
        not isinstance(strategy, dict) or GitStrategy.from_dict(strategy) is None
    ):
        raise WorkflowDefinitionError(f"{where}: invalid git_strategy")
    return PhaseConfig.from_dict(data)


def parse_workflow(data: dict[str, Any], source: str = "<workflow>") -> WorkflowDefinition:
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowDefinitionError(f"{source}: workflow needs a name")
    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise WorkflowDefinitionError(f"{source}: workflow needs at least one [[phases]] table")

    phases: list[PhaseDefinition] = []
    for ordinal, raw in enumerate(raw_phases):
        where = f"{source}: phase {ordinal + 1}"
        if not isinstance(raw, dict):
            raise WorkflowDefinitionError(f"{where} must be a table")
        phase_name = raw.get("name")
        prompt = raw.get("prompt")
        if not isinstance(phase_name, str) or not phase_name.strip():
            raise WorkflowDefinitionError(f"{where}: missing name")
        if not isinstance(prompt, str) or not prompt.strip():
            raise WorkflowDefinitionError(f"{where}: missing prompt")
        approval = raw.get("approval", "none")
        if approval not in APPROVAL_POLICIES:
            raise WorkflowDefinitionError(
                f"{where}: approval must be one of {', '.join(APPROVAL_POLICIES)}"
            )
        allowed_tools = raw.get("allowed_tools")
        if allowed_tools is not None and (
            not isinstance(allowed_tools, list)
            or not all(isinstance(tool, str) for tool in allowed_tools)
        ):
            raise WorkflowDefinitionError(f"{where}: allowed_tools must be a list of strings")
        agents = raw.get("agents")
        if agents is not None and not isinstance(agents, dict):
            raise WorkflowDefinitionError(f"{where}: agents must be a table")
        phases.append(
            PhaseDefinition(
                name=phase_name,
                prompt=prompt,
                approval=approval,
                allowed_tools=allowed_tools,
                agents=agents,
                config=_phase_config(raw.get("config"), where, ordinal),
            )
        )

    description = data.get("description")
    return WorkflowDefinition(
        name=name,
        phases=phases,
        description=description if isinstance(description, str) else None,
    )


def load_workflow(path: Path) -> WorkflowDefinition:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise WorkflowDefinitionError(f"Workflow file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise WorkflowDefinitionError(f"{path}: invalid TOML: {exc}") from exc
    return parse_workflow(data, str(path))


async def register_workflow(store: Store, definition: WorkflowDefinition) -> Workflow:
    workflow = Workflow(id=new_id(), name=definition.name, description=definition.description)
    await store.insert(workflow)
    for ordinal, phase in enumerate(definition.phases):
        config = phase.config.to_dict()
        await store.insert(
            Phase(
                id=new_id(),
                workflow_id=workflow.id,
                ordinal=ordinal,
                name=phase.name,
                prompt_template=phase.prompt,
                allowed_tools=json.dumps(phase.allowed_tools) if phase.allowed_tools else None,
                agents=json.dumps(phase.agents) if phase.agents else None,
                approval=phase.approval,  # type: ignore[arg-type]
                config=json.dumps(config) if config else None,
            )
        )
    logger.info(f"Registered workflow {workflow.name} with {len(definition.phases)} phase(s)")
    return workflow


async def register_workspace(store: Store, name: str, repo_paths: list[Path]) -> Workspace:
    """Find or create repo rows for ``repo_paths`` and group them in a new workspace."""
    repo_ids: list[str] = []
    for path in repo_paths:
        local_path = str(path.expanduser().resolve())
        repo = await store.first(Repo, local_path=local_path)
        if repo is None:
            repo = Repo(id=new_id(), name=Path(local_path).name, local_path=local_path)
            await store.insert(repo)
        repo_ids.append(repo.id)
    workspace = Workspace(id=new_id(), name=name, repo_ids=repo_ids)
    await store.insert(workspace)
    return workspace
