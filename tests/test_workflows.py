import asyncio
from pathlib import Path

import pytest

from conductor.errors import WorkflowDefinitionError
from conductor.models import Phase, PhaseConfig, Repo
from conductor.state import MemoryStore
from conductor.workflows import (
    load_workflow,
    parse_workflow,
    register_workflow,
    register_workspace,
)

WORKFLOW = """
name = "feature"
description = "Plan then build"

[[phases]]
name = "plan"
prompt = "Write a plan."
approval = "after"

[[phases]]
name = "build"
prompt = "Build it."
allowed_tools = ["Read", "Edit"]

[phases.config]
relay = "previous"
loop_to = 0
max_iterations = 2
"""


def test_load_workflow_reads_phases_in_file_order(tmp_path: Path) -> None:
    path = tmp_path / "feature.toml"
    path.write_text(WORKFLOW, encoding="utf-8")

    definition = load_workflow(path)

    assert definition.name == "feature"
    assert [phase.name for phase in definition.phases] == ["plan", "build"]
    assert definition.phases[0].approval == "after"
    assert definition.phases[1].config.relay == "previous"
    assert definition.phases[1].config.loop_to == 0


@pytest.mark.parametrize(
    ("phase", "message"),
    [
        ({"prompt": "x"}, "missing name"),
        ({"name": "a", "prompt": " "}, "missing prompt"),
        ({"name": "a", "prompt": "x", "approval": "sometimes"}, "approval must be"),
        ({"name": "a", "prompt": "x", "allowed_tools": "Read"}, "allowed_tools"),
        ({"name": "a", "prompt": "x", "config": {"relay": "everything"}}, "relay"),
        ({"name": "a", "prompt": "x", "config": {"loop_to": 1}}, "loop_to"),
        ({"name": "a", "prompt": "x", "config": {"max_iterations": 0}}, "max_iterations"),
        ({"name": "a", "prompt": "x", "config": {"loop_condition": "vote"}}, "loop_condition"),
    ],
)
def test_invalid_phases_are_rejected(phase: dict, message: str) -> None:
    with pytest.raises(WorkflowDefinitionError, match=message):
        parse_workflow({"name": "wf", "phases": [phase]})


def test_workflow_without_phases_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(WorkflowDefinitionError, match="at least one"):
        parse_workflow({"name": "wf", "phases": []})

    broken = tmp_path / "broken.toml"
    broken.write_text("name = [", encoding="utf-8")
    with pytest.raises(WorkflowDefinitionError, match="invalid TOML"):
        load_workflow(broken)


def test_register_assigns_ordinals_and_encodes_config() -> None:
    store = MemoryStore()
    definition = parse_workflow(
        {
            "name": "wf",
            "phases": [
                {"name": "plan", "prompt": "p"},
                {"name": "build", "prompt": "b", "config": {"relay": "all"}},
            ],
        }
    )

    async def scenario() -> list[Phase]:
        workflow = await register_workflow(store, definition)
        return await store.select(Phase, workflow_id=workflow.id, order_by="ordinal")

    phases = asyncio.run(scenario())

    assert [(phase.ordinal, phase.name) for phase in phases] == [(0, "plan"), (1, "build")]
    assert phases[0].config is None
    assert PhaseConfig.decode(phases[1].config).relay == "all"


def test_register_workspace_reuses_known_repos(tmp_path: Path) -> None:
    store = MemoryStore()
    repo = tmp_path / "app"
    repo.mkdir()

    async def scenario() -> tuple[list[str], list[str]]:
        first = await register_workspace(store, "one", [repo])
        second = await register_workspace(store, "two", [repo])
        return first.repo_ids, second.repo_ids

    first, second = asyncio.run(scenario())

    assert first == second
    assert len(asyncio.run(store.select(Repo))) == 1
