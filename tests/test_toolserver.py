import asyncio
import json
from pathlib import Path

import pytest

from conductor.errors import PreconditionError
from conductor.models import Agent, Approval, Artifact, Decision
from conductor.state import LocalContentStore, MemoryStore
from conductor.toolserver import PhaseTools, artifact_key, build_server


def _tools(tmp_path: Path, status: str = "running") -> tuple[PhaseTools, MemoryStore]:
    store = MemoryStore()
    asyncio.run(
        store.insert(Agent(id="g1", session_id="s1", phase_id="p1", name="plan", status=status))
    )
    tools = PhaseTools(
        store,
        LocalContentStore(tmp_path / "content"),
        agent_id="g1",
        session_id="s1",
        phase_id="p1",
    )
    return tools, store


def test_phase_complete_marks_agent_completed(tmp_path: Path) -> None:
    tools, store = _tools(tmp_path)

    reply = json.loads(asyncio.run(tools.phase_complete("All planned", "iterate")))
    agent = asyncio.run(store.require(Agent, "g1"))

    assert reply["status"] == "completed"
    assert agent.status == "completed"
    assert agent.completion_signal == "iterate"
    assert agent.phase_summary == "All planned"
    assert agent.completed_at is not None


def test_needs_input_parks_agent_and_queues_approval(tmp_path: Path) -> None:
    tools, store = _tools(tmp_path)

    reply = json.loads(asyncio.run(tools.phase_complete("Which database?", "needs_input")))
    agent = asyncio.run(store.require(Agent, "g1"))
    approval = asyncio.run(store.require(Approval, reply["approval_id"]))

    assert agent.status == "waiting"
    assert approval.type == "needs_input"
    assert approval.status == "pending"
    assert approval.agent_id == "g1"


def test_terminal_agent_is_left_untouched(tmp_path: Path) -> None:
    tools, store = _tools(tmp_path, status="failed")

    asyncio.run(tools.phase_complete("late", "complete"))

    assert asyncio.run(store.require(Agent, "g1")).status == "failed"


def test_artifact_writes_blob_and_overwrites_row(tmp_path: Path) -> None:
    tools, store = _tools(tmp_path)

    async def scenario() -> list[Artifact]:
        await tools.artifact("impl plan", "v1")
        await tools.artifact("impl plan", "v2", final=True)
        return await store.select(Artifact, session_id="s1")

    artifacts = asyncio.run(scenario())

    assert len(artifacts) == 1
    assert artifacts[0].status == "final"
    assert artifacts[0].file_path == artifact_key("s1", "impl plan")
    assert artifacts[0].file_path == "sessions/s1/artifacts/impl_plan.md"
    assert asyncio.run(tools.content.read_text(artifacts[0].file_path)) == "v2"


def test_decide_records_decision_and_pending_approval(tmp_path: Path) -> None:
    tools, store = _tools(tmp_path)

    reply = json.loads(
        asyncio.run(tools.decide("Which ORM?", "SQLAlchemy", "mature", ["peewee"]))
    )
    decision = asyncio.run(store.require(Decision, reply["decision_id"]))
    approval = asyncio.run(store.require(Approval, reply["approval_id"]))

    assert decision.status == "active"
    assert decision.alternatives == ["peewee"]
    assert approval.type == "decision"
    assert approval.payload_dict()["decision_id"] == decision.id


def test_context_filters_decisions_and_lists_artifacts(tmp_path: Path) -> None:
    tools, _ = _tools(tmp_path)

    async def scenario() -> tuple[str, str, str]:
        await tools.record("Auth approach", "JWT", tags=["auth"])
        await tools.record("Cache", "Redis")
        await tools.artifact("plan", "body")
        return (
            await tools.context("auth"),
            await tools.context(None),
            await tools.context("nothing-matches"),
        )

    filtered, everything, artifacts_only = asyncio.run(scenario())

    assert "### Auth approach" in filtered
    assert "Cache" not in filtered
    assert "### Cache" in everything
    assert "**plan** (draft)" in artifacts_only
    assert "Active Decisions" not in artifacts_only


def test_from_env_requires_identity_variables(tmp_path: Path) -> None:
    with pytest.raises(PreconditionError):
        PhaseTools.from_env({"CONDUCTOR_DATA_DIR": str(tmp_path)})

    tools = PhaseTools.from_env(
        {
            "CONDUCTOR_DATA_DIR": str(tmp_path),
            "CONDUCTOR_AGENT_ID": "g1",
            "CONDUCTOR_SESSION_ID": "s1",
            "CONDUCTOR_PHASE_ID": "p1",
        }
    )
    assert tools.agent_id == "g1"
    assert (tmp_path / "state").is_dir()


def test_server_registers_all_tools(tmp_path: Path) -> None:
    tools, _ = _tools(tmp_path)
    server = build_server(tools)

    listed = asyncio.run(server.list_tools())

    assert {tool.name for tool in listed} == {
        "conductor_phase_complete",
        "conductor_artifact",
        "conductor_record",
        "conductor_decide",
        "conductor_context",
    }


class KilledAfterRead(MemoryStore):
    """Marks the agent failed right after the first read, like a concurrent kill."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    async def get(self, cls, record_id):
        row = await super().get(cls, record_id)
        self.reads += 1
        if cls is Agent and self.reads == 1:
            await self.update(Agent, record_id, status="failed")
        return row


@pytest.mark.parametrize("signal", ["complete", "needs_input"])
def test_concurrent_kill_keeps_agent_failed(tmp_path: Path, signal: str) -> None:
    store = KilledAfterRead()
    asyncio.run(
        store.insert(Agent(id="g1", session_id="s1", phase_id="p1", name="plan", status="running"))
    )
    tools = PhaseTools(
        store,
        LocalContentStore(tmp_path / "content"),
        agent_id="g1",
        session_id="s1",
        phase_id="p1",
    )

    reply = json.loads(asyncio.run(tools.phase_complete("done", signal)))

    assert reply["status"] == "failed"
    assert asyncio.run(store.require(Agent, "g1")).status == "failed"
    assert asyncio.run(store.select(Approval, session_id="s1")) == []
