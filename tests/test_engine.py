import asyncio
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from conductor.agents import SpawnRequest
from conductor.approvals import ApprovalRouter
from conductor.config import ConductorConfig
from conductor.engine import IN_PLACE_CONFLICT, WorkflowEngine
from conductor.errors import PreconditionError
from conductor.events import AgentCompleted, EventBus, NonFatalError, PhaseAdvanced
from conductor.models import (
    LIVE_AGENT_STATUSES,
    Agent,
    Approval,
    Artifact,
    GitStrategy,
    LoopState,
    Session,
    new_id,
)
from conductor.state import LocalContentStore, MemoryStore
from conductor.workflows import parse_workflow, register_workflow, register_workspace
from conductor.worktree import WorktreeManager

MAIN = GitStrategy(mode="main")


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeAgents:
    """Records spawn requests and keeps agent rows without real processes."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.requests: list[SpawnRequest] = []
        self.live: dict[str, str] = {}
        self.killed: list[str] = []

    async def spawn_agent(self, request: SpawnRequest) -> str:
        agent_id = new_id()
        await self.store.insert(
            Agent(
                id=agent_id,
                session_id=request.session_id,
                phase_id=request.phase_id,
                name=request.name,
                status="running",
                agent_type=request.agent_type,
                working_dir=request.working_dir,
                worktree_path=request.worktree_path,
                worktree_manifest=request.worktree_manifest,
                branch=request.branch,
                loop_iteration=request.loop_iteration,
            )
        )
        self.requests.append(request)
        self.live[agent_id] = request.session_id
        return agent_id

    async def kill_agent(self, agent_id: str) -> None:
        self.killed.append(agent_id)
        self.live.pop(agent_id, None)
        await self.store.update(
            Agent, agent_id, expect={"status": set(LIVE_AGENT_STATUSES)}, status="failed"
        )

    def get_active_agents(self, session_id: str | None = None) -> list[Any]:
        return [
            SimpleNamespace(id=agent_id, session_id=owner)
            for agent_id, owner in self.live.items()
            if session_id is None or owner == session_id
        ]

    def is_live(self, agent_id: str) -> bool:
        return agent_id in self.live


@dataclass
class Harness:
    store: MemoryStore
    bus: EventBus
    agents: FakeAgents
    router: ApprovalRouter
    engine: WorkflowEngine
    content: LocalContentStore
    repo: Path
    advanced: list[PhaseAdvanced] = field(default_factory=list)

    async def start(self, phases: list[dict[str, Any]], **kwargs: Any) -> str:
        definition = parse_workflow({"name": "flow", "phases": phases})
        workflow = await register_workflow(self.store, definition)
        workspace = kwargs.pop("workspace_id", None)
        if workspace is None:
            workspace = (await register_workspace(self.store, "ws", [self.repo])).id
        kwargs.setdefault("git_strategy", MAIN)
        return await self.engine.start_session(workflow.id, workspace, **kwargs)

    async def finish(
        self, agent_id: str, signal: str = "complete", summary: str | None = None
    ) -> None:
        self.agents.live.pop(agent_id, None)
        await self.store.update(
            Agent,
            agent_id,
            status="completed",
            completion_signal=signal,
            phase_summary=summary,
        )
        await self.bus.publish(AgentCompleted(agent_id=agent_id))

    async def last_agent(self) -> Agent:
        request_count = len(self.agents.requests)
        assert request_count > 0
        agents = await self.store.select(Agent)
        return agents[-1]

    async def session(self, session_id: str) -> Session:
        return await self.store.require(Session, session_id)

    async def pending_gate(self, session_id: str) -> Approval | None:
        return await self.store.first(
            Approval, session_id=session_id, type="phase_gate", status="pending"
        )

    async def resolve(self, approval: Approval, status: str) -> None:
        await self.router.resolve_approval(approval.id, status)  # type: ignore[arg-type]
        await self.engine.handle_approval_resolved(approval.id)


def _harness(tmp_path: Path) -> Harness:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    store = MemoryStore()
    bus = EventBus()
    config = ConductorConfig.default()
    config.storage.data_dir = str(tmp_path / "data")
    agents = FakeAgents(store)
    router = ApprovalRouter(store, bus)
    content = LocalContentStore(tmp_path / "content")
    engine = WorkflowEngine(
        store,
        content,
        bus,
        agents,
        router,
        WorktreeManager(tmp_path / "worktrees"),
        config,
    )
    harness = Harness(store, bus, agents, router, engine, content, repo)
    bus.subscribe(PhaseAdvanced, harness.advanced.append)
    return harness


TWO_PHASES = [
    {"name": "plan", "prompt": "Write a plan."},
    {"name": "build", "prompt": "Build it."},
]


def test_linear_workflow_runs_to_completion(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        session_id = await h.start(TWO_PHASES)
        first = await h.last_agent()
        assert h.agents.requests[0].prompt == "Write a plan."
        assert h.agents.requests[0].working_dir == str(h.repo.resolve())
        assert "conductor_phase_complete" in (h.agents.requests[0].system_prompt or "")

        await h.finish(first.id)
        assert [e.phase_name for e in h.advanced] == ["build"]
        assert h.advanced[0].phase_number == 2
        second = await h.last_agent()
        assert second.name == "build"

        await h.finish(second.id)
        session = await h.session(session_id)
        assert session.status == "completed"
        assert session.completed_at is not None

    asyncio.run(scenario())


def test_before_gate_blocks_launch_until_approved(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]

    async def scenario() -> None:
        session_id = await h.start(phases)
        assert h.agents.requests == []
        assert (await h.session(session_id)).status == "waiting_approval"
        gate = await h.pending_gate(session_id)
        assert gate is not None
        assert gate.summary == 'Approve starting phase "plan"?'
        assert gate.payload_dict()["direction"] == "before"

        await h.resolve(gate, "approved")
        assert len(h.agents.requests) == 1
        assert (await h.session(session_id)).status == "active"

    asyncio.run(scenario())


def test_rejected_gate_is_recreated_with_single_retry_prefix(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]

    async def scenario() -> None:
        session_id = await h.start(phases)
        gate = await h.pending_gate(session_id)
        await h.resolve(gate, "rejected")
        retry = await h.pending_gate(session_id)
        assert retry.summary == '[Retry] Approve starting phase "plan"?'

        await h.resolve(retry, "rejected")
        again = await h.pending_gate(session_id)
        assert again.summary == '[Retry] Approve starting phase "plan"?'
        assert (await h.session(session_id)).status == "waiting_approval"
        assert h.agents.requests == []

    asyncio.run(scenario())


def test_after_gate_reviews_output_before_advancing(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan.", "approval": "after"},
        {"name": "build", "prompt": "Build."},
    ]

    async def scenario() -> None:
        session_id = await h.start(phases)
        plan = await h.last_agent()
        await h.finish(plan.id)

        gate = await h.pending_gate(session_id)
        assert gate.summary == 'Review output of phase "plan" before advancing'
        assert gate.agent_id == plan.id
        assert (await h.session(session_id)).status == "waiting_approval"
        assert len(h.agents.requests) == 1

        await h.resolve(gate, "approved")
        assert (await h.last_agent()).name == "build"
        assert (await h.session(session_id)).current_phase == 1

    asyncio.run(scenario())


def test_self_loop_on_agent_signal_stops_at_cap(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan."},
        {"name": "build", "prompt": "Build.", "config": {"loop_to": 1, "max_iterations": 2}},
    ]

    async def scenario() -> None:
        session_id = await h.start(phases)
        await h.finish((await h.last_agent()).id)
        build = await h.last_agent()
        assert "Phase 2: build (self-loop)" in (h.agents.requests[-1].system_prompt or "")
        assert "Current iteration: 1 of 2" in (h.agents.requests[-1].system_prompt or "")

        await h.finish(build.id, signal="iterate")
        state = LoopState.decode((await h.session(session_id)).loop_state)
        assert state == LoopState(iterations=1, loop_origin_ordinal=1)
        assert h.agents.requests[-1].loop_iteration == 2

        await h.finish((await h.last_agent()).id, signal="iterate")
        assert h.agents.requests[-1].loop_iteration == 3
        assert len(h.agents.requests) == 4

        await h.finish((await h.last_agent()).id, signal="iterate")
        session = await h.session(session_id)
        assert session.status == "completed"
        assert len(h.agents.requests) == 4

    asyncio.run(scenario())


def test_loop_approval_gate_loops_back_then_advances_on_rejection(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan."},
        {
            "name": "build",
            "prompt": "Build.",
            "config": {"loop_to": 0, "max_iterations": 3, "loop_condition": "approval"},
        },
    ]

    async def scenario() -> None:
        session_id = await h.start(phases)
        await h.finish((await h.last_agent()).id)
        await h.finish((await h.last_agent()).id)

        gate = await h.pending_gate(session_id)
        assert gate.summary == (
            'Loop back to phase "plan" (iteration 1 of 3) or advance past "build"?'
        )
        assert gate.payload_dict()["loop_decision"] is True

        await h.resolve(gate, "approved")
        session = await h.session(session_id)
        assert session.current_phase == 0
        assert (await h.last_agent()).name == "plan"

        await h.finish((await h.last_agent()).id)
        build = await h.last_agent()
        assert build.name == "build"
        assert build.loop_iteration == 2

        await h.finish(build.id)
        gate = await h.pending_gate(session_id)
        assert "(iteration 2 of 3)" in gate.summary
        await h.resolve(gate, "rejected")
        assert (await h.session(session_id)).status == "completed"

    asyncio.run(scenario())


def test_relay_and_context_are_prepended_to_prompt(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan."},
        {"name": "build", "prompt": "Build it.", "config": {"relay": "previous"}},
    ]

    async def scenario() -> None:
        session_id = await h.start(phases, context="Ticket 42")
        plan = await h.last_agent()
        assert h.agents.requests[0].prompt == (
            "## Context\n\nTicket 42\n\n## Phase Instructions\n\nPlan."
        )
        key = f"sessions/{session_id}/artifacts/plan.md"
        await h.content.write(key, "Step 1")
        await h.store.insert(
            Artifact(
                id="art-1",
                session_id=session_id,
                phase_id=plan.phase_id,
                agent_id=plan.id,
                name="plan",
                file_path=key,
            )
        )
        await h.finish(plan.id, summary="Planned the login flow")

        prompt = h.agents.requests[-1].prompt
        assert prompt.startswith("## Context\n\nTicket 42\n\n## Relay from Prior Phases")
        assert "### Phase 1: plan\n\nPlanned the login flow" in prompt
        assert "#### Artifact: plan\n\nStep 1" in prompt
        assert prompt.endswith("## Phase Instructions\n\nBuild it.")

    asyncio.run(scenario())


def test_summary_relay_omits_artifacts(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan."},
        {"name": "build", "prompt": "Build it.", "config": {"relay": "summary"}},
    ]

    async def scenario() -> str:
        await h.start(phases)
        await h.finish((await h.last_agent()).id, summary="Short summary")
        return h.agents.requests[-1].prompt

    prompt = asyncio.run(scenario())

    assert "Short summary" in prompt
    assert "#### Artifact" not in prompt


def test_pause_and_resume(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        session_id = await h.start(TWO_PHASES)
        first = await h.last_agent()

        await h.engine.pause_session(session_id)
        assert h.agents.killed == [first.id]
        assert (await h.session(session_id)).status == "paused"
        with pytest.raises(PreconditionError):
            await h.engine.pause_session(session_id)

        await h.engine.resume_session(session_id)
        assert (await h.session(session_id)).status == "active"
        assert len(h.agents.requests) == 2
        assert (await h.last_agent()).name == "plan"

    asyncio.run(scenario())


def test_pause_is_rejected_while_waiting_for_approval(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]

    async def scenario() -> None:
        session_id = await h.start(phases)
        with pytest.raises(PreconditionError):
            await h.engine.pause_session(session_id)
        await h.engine.resume_session(session_id)
        assert (await h.session(session_id)).status == "waiting_approval"
        pending = await h.store.select(Approval, session_id=session_id, status="pending")
        assert len(pending) == 1

    asyncio.run(scenario())


def test_recovery_pauses_orphaned_sessions_and_restores_gates(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    gated = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]

    async def scenario() -> None:
        orphaned = await h.start(TWO_PHASES)
        h.agents.live.clear()
        waiting = await h.start(gated, git_strategy=GitStrategy())
        gate = await h.pending_gate(waiting)
        await h.store.delete(Approval, gate.id)

        touched = await h.engine.recover_sessions()

        assert set(touched) == {orphaned, waiting}
        assert (await h.session(orphaned)).status == "paused"
        restored = await h.pending_gate(waiting)
        assert restored.summary == '[Recovered] Approve phase "plan"?'

    asyncio.run(scenario())


def test_in_place_guard_blocks_second_session(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        workspace = await register_workspace(h.store, "ws", [h.repo])
        await h.start(TWO_PHASES, workspace_id=workspace.id)
        with pytest.raises(PreconditionError) as excinfo:
            await h.start(TWO_PHASES, workspace_id=workspace.id)
        assert str(excinfo.value) == IN_PLACE_CONFLICT

        await h.start(TWO_PHASES, workspace_id=workspace.id, git_strategy=GitStrategy())
        isolated = await h.last_agent()
        assert isolated.worktree_path is not None
        assert Path(isolated.worktree_path).is_dir()

    asyncio.run(scenario())


def test_start_requires_phases_and_git_repositories(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    plain = tmp_path / "plain"
    plain.mkdir()

    async def scenario() -> None:
        workspace = await register_workspace(h.store, "plain", [plain])
        with pytest.raises(PreconditionError):
            await h.start(TWO_PHASES, workspace_id=workspace.id)
        with pytest.raises(PreconditionError):
            await h.engine.start_session("no-such-workflow", workspace.id)

    asyncio.run(scenario())


def test_stale_completion_is_ignored(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        session_id = await h.start(TWO_PHASES)
        first = await h.last_agent()
        await h.finish(first.id)
        await h.engine.handle_phase_complete(first.id)

        assert len(h.agents.requests) == 2
        assert (await h.session(session_id)).current_phase == 1

    asyncio.run(scenario())


def test_delete_session_removes_rows_blobs_and_worktrees(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        session_id = await h.start(TWO_PHASES, git_strategy=GitStrategy())
        agent = await h.last_agent()
        worktree = Path(agent.worktree_path)
        await h.content.write(f"sessions/{session_id}/artifacts/plan.md", "x")

        await h.engine.delete_session(session_id)

        assert await h.store.get(Session, session_id) is None
        assert await h.store.select(Agent, session_id=session_id) == []
        assert h.agents.killed == [agent.id]
        assert not worktree.exists()
        assert not await h.content.exists(f"sessions/{session_id}/artifacts/plan.md")

    asyncio.run(scenario())


def test_loop_back_to_earlier_phase_stops_at_cap(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    phases = [
        {"name": "plan", "prompt": "Plan."},
        {
            "name": "review",
            "prompt": "Review.",
            "config": {"loop_to": 0, "max_iterations": 2, "relay": "all"},
        },
        {"name": "ship", "prompt": "Ship."},
    ]

    async def scenario() -> None:
        session_id = await h.start(phases)
        await h.finish((await h.last_agent()).id, summary="First plan")
        review = await h.last_agent()
        assert review.loop_iteration == 1

        await h.finish(review.id, signal="iterate", summary="Needs rework")
        session = await h.session(session_id)
        assert session.current_phase == 0
        assert LoopState.decode(session.loop_state) == LoopState(
            iterations=1, loop_origin_ordinal=1
        )
        assert (await h.last_agent()).name == "plan"

        await h.finish((await h.last_agent()).id, summary="Second plan")
        session = await h.session(session_id)
        assert session.current_phase == 1
        assert LoopState.decode(session.loop_state) == LoopState(
            iterations=1, loop_origin_ordinal=1
        )
        review = await h.last_agent()
        assert review.loop_iteration == 2
        relay = h.agents.requests[-1].prompt
        assert "### Phase 1: plan" in relay
        assert "Phase 2: review" not in relay

        await h.finish(review.id, signal="iterate")
        assert LoopState.decode((await h.session(session_id)).loop_state) == LoopState(
            iterations=2, loop_origin_ordinal=1
        )
        await h.finish((await h.last_agent()).id)
        review = await h.last_agent()
        assert review.loop_iteration == 3

        await h.finish(review.id, signal="iterate")
        session = await h.session(session_id)
        assert session.current_phase == 2
        assert session.loop_state is None
        assert [r.name for r in h.agents.requests] == [
            "plan",
            "review",
            "plan",
            "review",
            "plan",
            "review",
            "ship",
        ]

    asyncio.run(scenario())


def test_recovery_restores_gate_beside_other_pending_approvals(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    gated = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]

    async def scenario() -> None:
        session_id = await h.start(gated)
        gate = await h.pending_gate(session_id)
        await h.store.update(Approval, gate.id, status="approved")
        await h.router.create_approval(session_id, "agent_idle", "Idle", agent_id="g1")

        touched = await h.engine.recover_sessions()

        assert touched == [session_id]
        restored = await h.pending_gate(session_id)
        assert restored is not None
        assert restored.summary == '[Recovered] Approve phase "plan"?'

    asyncio.run(scenario())


def test_recovery_skips_sessions_pointing_at_missing_phases(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    gated = [{"name": "plan", "prompt": "Plan.", "approval": "before"}]
    reported: list[NonFatalError] = []
    h.bus.subscribe(NonFatalError, reported.append)

    async def scenario() -> tuple[str, str]:
        healthy = await h.start(gated)
        session = await h.session(healthy)
        await h.store.delete(Approval, (await h.pending_gate(healthy)).id)
        await h.store.insert(
            Session(
                id="broken",
                workflow_id=session.workflow_id,
                workspace_id=session.workspace_id,
                status="waiting_approval",
                current_phase=7,
                created_at="2000-01-01T00:00:00+00:00",
            )
        )
        touched = await h.engine.recover_sessions()
        assert touched == [healthy]
        assert await h.pending_gate(healthy) is not None
        return healthy, (await h.session("broken")).status

    _, broken_status = asyncio.run(scenario())

    assert broken_status == "waiting_approval"
    assert reported[0].context == {"session_id": "broken"}


def test_in_place_branch_mode_without_branch_name_is_rejected(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    async def scenario() -> None:
        session_id = await h.start(TWO_PHASES)
        session = await h.session(session_id)
        phase = await h.engine._current_phase(session)
        repos = await h.engine._workspace_repos(session.workspace_id)
        strategy = GitStrategy(mode="branch", isolation="in_place")
        with pytest.raises(PreconditionError, match="requires a branch name"):
            await h.engine._prepare_isolation(session, phase, strategy, repos)

    asyncio.run(scenario())
