from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from conductor.agents import SpawnRequest
from conductor.approvals import ApprovalRouter
from conductor.config import ConductorConfig
from conductor.errors import ContentStoreError, PreconditionError, WorktreeError
from conductor.events import AgentCompleted, EventBus, PhaseAdvanced, SessionStatusChanged
from conductor.models import (
    LIVE_AGENT_STATUSES,
    Agent,
    Approval,
    Artifact,
    Decision,
    GitStrategy,
    LoopState,
    Message,
    Phase,
    PhaseConfig,
    Repo,
    Session,
    SessionStatus,
    Workspace,
    decode_json_object,
    decode_manifest,
    decode_string_list,
    encode_manifest,
    new_id,
    utcnow_iso,
)
from conductor.prompts import LoopInfo, build_system_preamble
from conductor.state.content import LocalContentStore
from conductor.state.store import Store
from conductor.worktree import RepoRef, WorktreeManager

IN_PLACE_CONFLICT = (
    "Another agent is already running in-place in this workspace. "
    "Use worktree isolation or wait for it to complete."
)
RETRY_PREFIX = "[Retry] "


class AgentRunner(Protocol):
    async def spawn_agent(self, request: SpawnRequest) -> str: ...

    async def kill_agent(self, agent_id: str) -> None: ...

    def get_active_agents(self, session_id: str | None = None) -> list[Any]: ...

    def is_live(self, agent_id: str) -> bool: ...


@dataclass(slots=True)
class Isolation:
    working_dir: str
    worktree_path: str | None = None
    worktree_manifest: str | None = None
    branch: str | None = None


class WorkflowEngine:
    """Phase state machine for sessions.

    Session rows are only written here. The engine reacts to agent completion
    and phase-gate resolution, and decides whether to loop, gate or advance.
    """

    def __init__(
        self,
        store: Store,
        content: LocalContentStore,
        bus: EventBus,
        agents: AgentRunner,
        approvals: ApprovalRouter,
        worktrees: WorktreeManager,
        config: ConductorConfig,
    ) -> None:
        self.store = store
        self.content = content
        self.bus = bus
        self.agents = agents
        self.approvals = approvals
        self.worktrees = worktrees
        self.config = config
        bus.subscribe(AgentCompleted, self._on_agent_completed)

    async def _on_agent_completed(self, event: AgentCompleted) -> None:
        await self.handle_phase_complete(event.agent_id)

    # -- helpers -----------------------------------------------------------

    async def set_session_status(
        self, session_id: str, status: SessionStatus, **extra: Any
    ) -> None:
        await self.store.update(Session, session_id, status=status, **extra)
        logger.info(f"Session {session_id} -> {status}")
        await self.bus.publish(SessionStatusChanged(session_id=session_id, status=status))

    async def _phases(self, workflow_id: str) -> list[Phase]:
        return await self.store.select(Phase, order_by="ordinal", workflow_id=workflow_id)

    async def _current_phase(self, session: Session) -> Phase:
        for phase in await self._phases(session.workflow_id):
            if phase.ordinal == session.current_phase:
                return phase
        raise PreconditionError(
            f"Session {session.id} points at missing phase {session.current_phase}"
        )

    async def has_pending_phase_gate(self, session_id: str) -> bool:
        gate = await self.store.first(
            Approval, session_id=session_id, type="phase_gate", status="pending"
        )
        return gate is not None

    async def _create_phase_gate(
        self,
        session_id: str,
        summary: str,
        payload: dict[str, Any],
        *,
        agent_id: str | None = None,
    ) -> Approval | None:
        if await self.has_pending_phase_gate(session_id):
            logger.warning(f"Session {session_id} already has a pending phase gate")
            return None
        return await self.approvals.create_approval(
            session_id, "phase_gate", summary, payload=payload, agent_id=agent_id
        )

    async def _gate_or_launch(self, session_id: str, phase: Phase) -> None:
        if phase.approval == "before":
            await self._create_phase_gate(
                session_id,
                f'Approve starting phase "{phase.name}"?',
                {"phase_id": phase.id, "phase_name": phase.name, "direction": "before"},
            )
            await self.set_session_status(session_id, "waiting_approval")
        else:
            await self.launch_phase_agent(session_id, phase)

    async def _workspace_repos(self, workspace_id: str) -> list[Repo]:
        workspace = await self.store.require(Workspace, workspace_id)
        repos: list[Repo] = []
        for repo_id in workspace.repo_ids:
            repo = await self.store.get(Repo, repo_id)
            if repo is not None:
                repos.append(repo)
        if not repos:
            raise PreconditionError(f"Workspace {workspace.name!r} has no repositories")
        for repo in repos:
            if not await self.worktrees.is_git_repo(repo.local_path):
                raise PreconditionError(
                    f'Repo "{repo.name}" at "{repo.local_path}" is not a git repository. '
                    "Update the repo path in workspace settings."
                )
        return repos

    @staticmethod
    def _loop_target(phase: Phase, config: PhaseConfig, phases: list[Phase]) -> Phase | None:
        if config.loop_to is None or not 0 <= config.loop_to <= phase.ordinal:
            return None
        return next((p for p in phases if p.ordinal == config.loop_to), None)

    @staticmethod
    def _iterations_done(session: Session, phase: Phase) -> int:
        state = LoopState.decode(session.loop_state)
        if state is None or state.loop_origin_ordinal != phase.ordinal:
            return 0
        return state.iterations

    def _max_iterations(self, config: PhaseConfig) -> int:
        return config.max_iterations or self.config.engine.max_loop_iterations

    # -- session lifecycle -------------------------------------------------

    async def start_session(
        self,
        workflow_id: str,
        workspace_id: str,
        *,
        context: str | None = None,
        description: str | None = None,
        git_strategy: GitStrategy | None = None,
    ) -> str:
        phases = await self._phases(workflow_id)
        if not phases:
            raise PreconditionError("Workflow has no phases")
        await self._workspace_repos(workspace_id)

        session = Session(
            id=new_id(),
            workflow_id=workflow_id,
            workspace_id=workspace_id,
            status="active",
            current_phase=phases[0].ordinal,
            context=context or None,
            description=description,
            git_strategy=git_strategy.encode() if git_strategy else None,
        )
        await self.store.insert(session)
        logger.info(f"Session {session.id} started on workflow {workflow_id}")
        await self.bus.publish(SessionStatusChanged(session_id=session.id, status="active"))
        await self._gate_or_launch(session.id, phases[0])
        return session.id

    async def advance_phase(self, session_id: str) -> None:
        session = await self.store.require(Session, session_id)
        phases = await self._phases(session.workflow_id)
        index = next(
            (i for i, phase in enumerate(phases) if phase.ordinal == session.current_phase), -1
        )
        if index + 1 >= len(phases):
            await self.set_session_status(
                session_id, "completed", completed_at=utcnow_iso(), loop_state=None
            )
            return

        next_phase = phases[index + 1]
        changes: dict[str, Any] = {"current_phase": next_phase.ordinal}
        state = LoopState.decode(session.loop_state)
        if state is not None and next_phase.ordinal > state.loop_origin_ordinal:
            changes["loop_state"] = None
        await self.store.update(Session, session_id, **changes)
        await self.bus.publish(
            PhaseAdvanced(
                session_id=session_id,
                phase_name=next_phase.name,
                phase_number=index + 2,
                total_phases=len(phases),
            )
        )
        await self._gate_or_launch(session_id, next_phase)

    async def launch_phase_agent(self, session_id: str, phase: Phase) -> str | None:
        if await self.has_pending_phase_gate(session_id):
            logger.warning(f"Blocked launch for session {session_id}: pending phase gate exists")
            return None

        session = await self.store.require(Session, session_id)
        repos = await self._workspace_repos(session.workspace_id)
        phases = await self._phases(session.workflow_id)
        phase_config = PhaseConfig.decode(phase.config)
        strategy = (
            phase_config.git_strategy
            or GitStrategy.decode(session.git_strategy)
            or GitStrategy()
        )

        loop = self._loop_info(session, phase, phase_config, phases)
        state = LoopState.decode(session.loop_state)
        if state is not None:
            loop_iteration: int | None = state.iterations + 1
        else:
            loop_iteration = 1 if loop is not None else None

        system_prompt = build_system_preamble(
            session_id=session_id,
            phase_id=phase.id,
            phase_name=phase.name,
            repos=[(repo.name, repo.local_path) for repo in repos],
            tool_server_name=self.config.tool_server.name,
            loop=loop,
        )
        prompt = await self._build_prompt(session, phase, phase_config, phases)
        isolation = await self._prepare_isolation(session, phase, strategy, repos)

        agent_id = await self.agents.spawn_agent(
            SpawnRequest(
                session_id=session_id,
                phase_id=phase.id,
                name=phase.name,
                prompt=prompt,
                working_dir=isolation.working_dir,
                agent_type=phase_config.agent_type or self.config.engine.default_agent_type,
                permission_mode=(
                    phase_config.permission_mode or self.config.engine.default_permission_mode
                ),
                system_prompt=system_prompt,
                allowed_tools=decode_string_list(phase.allowed_tools, what="allowed tools"),
                agents=decode_json_object(phase.agents, what="agents"),
                worktree_path=isolation.worktree_path,
                worktree_manifest=isolation.worktree_manifest,
                branch=isolation.branch,
                loop_iteration=loop_iteration,
            )
        )
        current = await self.store.get(Session, session_id)
        if current is not None and current.status != "active":
            await self.set_session_status(session_id, "active")
        return agent_id

    def _loop_info(
        self, session: Session, phase: Phase, config: PhaseConfig, phases: list[Phase]
    ) -> LoopInfo | None:
        target = self._loop_target(phase, config, phases)
        if target is None:
            return None
        return LoopInfo(
            loop_to=target.ordinal,
            target_phase_name=target.name,
            is_self_loop=target.ordinal == phase.ordinal,
            max_iterations=self._max_iterations(config),
            condition=config.loop_condition,
            current_iteration=self._iterations_done(session, phase) + 1,
        )

    async def _build_prompt(
        self, session: Session, phase: Phase, config: PhaseConfig, phases: list[Phase]
    ) -> str:
        sections: list[str] = []
        if session.context:
            sections.append(f"## Context\n\n{session.context}")
        relay = await self._build_relay(session, phase, config, phases)
        if relay:
            sections.append(relay)
        if not sections:
            return phase.prompt_template
        sections.append(f"## Phase Instructions\n\n{phase.prompt_template}")
        return "\n\n".join(sections)

    async def _build_relay(
        self, session: Session, phase: Phase, config: PhaseConfig, phases: list[Phase]
    ) -> str | None:
        if config.relay == "off":
            return None
        state = LoopState.decode(session.loop_state)
        self_loop = (
            state is not None
            and state.iterations > 0
            and state.loop_origin_ordinal == phase.ordinal
            and config.loop_to == phase.ordinal
        )
        if self_loop:
            eligible = [p for p in phases if p.ordinal <= phase.ordinal]
        else:
            eligible = [p for p in phases if p.ordinal < phase.ordinal]
        if config.relay == "previous":
            eligible = eligible[-1:]

        blocks: list[str] = []
        for prior in eligible:
            parts: list[str] = []
            agents = await self.store.select(
                Agent, descending=True, session_id=session.id, phase_id=prior.id
            )
            summary = next((a.phase_summary for a in agents if a.phase_summary), None)
            if summary:
                parts.append(summary)
            if config.relay in ("previous", "all"):
                artifacts = await self.store.select(
                    Artifact, session_id=session.id, phase_id=prior.id
                )
                for artifact in artifacts:
                    try:
                        body = await self.content.read_text(artifact.file_path)
                    except ContentStoreError as exc:
                        await self.bus.report("workflow_engine", exc, artifact_id=artifact.id)
                        continue
                    parts.append(f"#### Artifact: {artifact.name}\n\n{body}")
            if parts:
                heading = f"### Phase {prior.ordinal + 1}: {prior.name}"
                blocks.append(heading + "\n\n" + "\n\n".join(parts))
        if not blocks:
            return None
        return "## Relay from Prior Phases\n\n" + "\n\n".join(blocks)

    async def _guard_in_place(self, session: Session) -> None:
        sessions = await self.store.select(Session, workspace_id=session.workspace_id)
        others = {s.id for s in sessions if s.id != session.id}
        if not others:
            return
        conflicting = await self.store.first(
            Agent,
            session_id=others,
            worktree_path=None,
            worktree_manifest=None,
            status=LIVE_AGENT_STATUSES,
        )
        if conflicting is not None:
            raise PreconditionError(IN_PLACE_CONFLICT)

    async def _prepare_isolation(
        self, session: Session, phase: Phase, strategy: GitStrategy, repos: list[Repo]
    ) -> Isolation:
        task_name = f"{phase.name}-{session.id[:8]}"
        primary = repos[0].local_path
        refs = [RepoRef(name=repo.name, path=repo.local_path) for repo in repos]
        if strategy.in_place:
            await self._guard_in_place(session)

        if strategy.mode == "main":
            return Isolation(working_dir=primary)

        if strategy.mode == "branch" and strategy.in_place:
            if not strategy.branch:
                raise PreconditionError("Branch mode requires a branch name")
            for repo in repos:
                await self.worktrees.checkout_branch(
                    repo.local_path, strategy.branch, create=strategy.create
                )
            return Isolation(working_dir=primary, branch=strategy.branch)

        branch = strategy.branch if strategy.mode == "branch" else None
        if len(repos) > 1:
            multi = await self.worktrees.create_multi_worktree(
                refs, task_name, branch=branch, create=strategy.create
            )
            return Isolation(
                working_dir=multi.session_dir,
                worktree_manifest=encode_manifest(multi.entries),
                branch=multi.entries[0].branch,
            )
        if branch is None:
            info = await self.worktrees.create_worktree(primary, task_name)
        else:
            info = await self.worktrees.create_branch_worktree(
                primary, branch, task_name, create=strategy.create
            )
        return Isolation(working_dir=info.path, worktree_path=info.path, branch=info.branch)

    # -- reactions ---------------------------------------------------------

    async def handle_phase_complete(self, agent_id: str) -> None:
        agent = await self.store.get(Agent, agent_id)
        if agent is None:
            return
        session = await self.store.get(Session, agent.session_id)
        phase = await self.store.get(Phase, agent.phase_id)
        if session is None or phase is None:
            return
        if session.status not in ("active", "waiting_approval"):
            logger.info(f"Ignoring completion of {agent_id}: session is {session.status}")
            return
        if phase.ordinal != session.current_phase:
            logger.warning(f"Ignoring completion of {agent_id}: phase {phase.name} is not current")
            return

        config = PhaseConfig.decode(phase.config)
        phases = await self._phases(session.workflow_id)
        target = self._loop_target(phase, config, phases)
        done = self._iterations_done(session, phase)
        cap = self._max_iterations(config)

        if target is not None and done < cap and config.loop_condition == "approval":
            await self._create_phase_gate(
                session.id,
                f'Loop back to phase "{target.name}" (iteration {done + 1} of {cap}) '
                f'or advance past "{phase.name}"?',
                {
                    "phase_id": phase.id,
                    "phase_name": phase.name,
                    "direction": "after",
                    "agent_id": agent_id,
                    "loop_decision": True,
                    "loop_to": target.ordinal,
                },
                agent_id=agent_id,
            )
            await self.set_session_status(session.id, "waiting_approval")
            return

        if target is not None and done < cap and agent.completion_signal == "iterate":
            await self._execute_loop(session, phase, target)
            return

        if phase.approval == "after":
            await self._create_phase_gate(
                session.id,
                f'Review output of phase "{phase.name}" before advancing',
                {
                    "phase_id": phase.id,
                    "phase_name": phase.name,
                    "direction": "after",
                    "agent_id": agent_id,
                },
                agent_id=agent_id,
            )
            await self.set_session_status(session.id, "waiting_approval")
            return

        await self.advance_phase(session.id)

    async def _execute_loop(self, session: Session, origin: Phase, target: Phase) -> None:
        state = LoopState(
            iterations=self._iterations_done(session, origin) + 1,
            loop_origin_ordinal=origin.ordinal,
        )
        await self.store.update(
            Session, session.id, current_phase=target.ordinal, loop_state=state.encode()
        )
        logger.info(
            f"Session {session.id} looping from {origin.name} to {target.name} "
            f"(iteration {state.iterations})"
        )
        phases = await self._phases(session.workflow_id)
        await self.bus.publish(
            PhaseAdvanced(
                session_id=session.id,
                phase_name=target.name,
                phase_number=phases.index(target) + 1 if target in phases else target.ordinal + 1,
                total_phases=len(phases),
            )
        )
        await self.launch_phase_agent(session.id, target)

    async def handle_approval_resolved(self, approval_id: str) -> None:
        approval = await self.store.get(Approval, approval_id)
        if approval is None or approval.type != "phase_gate" or approval.status == "pending":
            return
        payload = approval.payload_dict()
        session = await self.store.require(Session, approval.session_id)
        phase = await self.store.get(Phase, str(payload.get("phase_id", "")))
        if phase is None:
            await self.bus.report(
                "workflow_engine", "Phase gate references a missing phase", approval_id=approval_id
            )
            return
        loop_decision = bool(payload.get("loop_decision"))

        if approval.status == "approved":
            if payload.get("direction") == "before":
                await self.set_session_status(session.id, "active")
                await self.launch_phase_agent(session.id, phase)
                return
            if loop_decision:
                phases = await self._phases(session.workflow_id)
                target = self._loop_target(phase, PhaseConfig.decode(phase.config), phases)
                await self.set_session_status(session.id, "active")
                if target is not None:
                    await self._execute_loop(session, phase, target)
                else:
                    await self.advance_phase(session.id)
                return
            await self.set_session_status(session.id, "active")
            await self.advance_phase(session.id)
            return

        if loop_decision:
            await self.set_session_status(session.id, "active")
            await self.advance_phase(session.id)
            return

        summary = approval.summary
        if not summary.startswith(RETRY_PREFIX):
            summary = RETRY_PREFIX + summary
        await self._create_phase_gate(session.id, summary, payload, agent_id=approval.agent_id)
        await self.set_session_status(session.id, "waiting_approval")

    async def pause_session(self, session_id: str) -> None:
        session = await self.store.require(Session, session_id)
        if session.status == "waiting_approval":
            raise PreconditionError(
                "Cannot pause a session that is waiting for approval: no agent to kill"
            )
        if session.status != "active":
            raise PreconditionError(f"Session {session_id} is {session.status}, not active")
        await self._kill_session_agents(session_id)
        await self.set_session_status(session_id, "paused")

    async def _kill_session_agents(self, session_id: str) -> None:
        doomed = {live.id for live in self.agents.get_active_agents(session_id)}
        rows = await self.store.select(Agent, session_id=session_id, status=LIVE_AGENT_STATUSES)
        doomed.update(agent.id for agent in rows)
        for agent_id in doomed:
            await self.agents.kill_agent(agent_id)

    async def resume_session(self, session_id: str) -> None:
        session = await self.store.require(Session, session_id)
        if session.status not in ("paused", "waiting_approval"):
            raise PreconditionError(f"Session {session_id} is {session.status}; cannot resume")
        phase = await self._current_phase(session)
        if await self.has_pending_phase_gate(session_id):
            if session.status != "waiting_approval":
                await self.set_session_status(session_id, "waiting_approval")
            return
        if phase.approval == "before":
            await self._create_phase_gate(
                session_id,
                f'Approve starting phase "{phase.name}"?',
                {"phase_id": phase.id, "phase_name": phase.name, "direction": "before"},
            )
            await self.set_session_status(session_id, "waiting_approval")
            return
        await self._kill_session_agents(session_id)
        await self.set_session_status(session_id, "active")
        await self.launch_phase_agent(session_id, phase)

    async def recover_sessions(self) -> list[str]:
        """Heal sessions left inconsistent by a restart; returns the touched ids."""
        touched: list[str] = []
        live_sessions = {live.session_id for live in self.agents.get_active_agents()}

        for session in await self.store.select(Session, status="active"):
            if session.id in live_sessions:
                continue
            orphans = await self.store.select(
                Agent, session_id=session.id, status=LIVE_AGENT_STATUSES
            )
            for agent in orphans:
                await self.agents.kill_agent(agent.id)
            await self.set_session_status(session.id, "paused")
            logger.info(f"Recovered session {session.id}: no live agent, paused")
            touched.append(session.id)

        for session in await self.store.select(Session, status="waiting_approval"):
            if await self.has_pending_phase_gate(session.id):
                continue
            try:
                phase = await self._current_phase(session)
            except PreconditionError as exc:
                await self.bus.report("workflow_engine", exc, session_id=session.id)
                continue
            if phase.approval == "none":
                continue
            await self._create_phase_gate(
                session.id,
                f'[Recovered] Approve phase "{phase.name}"?',
                {"phase_id": phase.id, "phase_name": phase.name, "direction": phase.approval},
            )
            logger.info(f"Recovered session {session.id}: regenerated phase gate")
            touched.append(session.id)
        return touched

    async def delete_session(self, session_id: str) -> None:
        session = await self.store.get(Session, session_id)
        if session is None:
            return
        agents = await self.store.select(Agent, session_id=session_id)
        for agent in agents:
            if self.agents.is_live(agent.id) or agent.status in LIVE_AGENT_STATUSES:
                await self.agents.kill_agent(agent.id)

        await self.store.delete_where(Message, session_id=session_id)
        await self.store.delete_where(Artifact, session_id=session_id)
        await self.store.delete_where(Decision, session_id=session_id)
        await self.store.delete_where(Approval, session_id=session_id)
        await self.store.delete_where(Agent, session_id=session_id)
        await self.store.delete(Session, session_id)

        try:
            await self.content.delete_tree(f"sessions/{session_id}")
        except (ContentStoreError, OSError) as exc:
            await self.bus.report("workflow_engine", exc, session_id=session_id)
        await self._remove_worktrees(session, agents)
        logger.info(f"Deleted session {session_id}")

    async def _remove_worktrees(self, session: Session, agents: list[Agent]) -> None:
        primary: str | None = None
        workspace = await self.store.get(Workspace, session.workspace_id)
        if workspace is not None and workspace.repo_ids:
            repo = await self.store.get(Repo, workspace.repo_ids[0])
            primary = repo.local_path if repo is not None else None
        for agent in agents:
            try:
                manifest = decode_manifest(agent.worktree_manifest)
                if manifest:
                    session_dir = str(Path(manifest[0].worktree_path).parent)
                    await self.worktrees.remove_multi_worktree(manifest, session_dir)
                elif agent.worktree_path and primary is not None:
                    await self.worktrees.remove_worktree(primary, agent.worktree_path)
            except (WorktreeError, OSError) as exc:
                await self.bus.report("workflow_engine", exc, agent_id=agent.id)
