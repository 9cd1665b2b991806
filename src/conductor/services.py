from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from conductor.agents import PLACEHOLDER_INPUT, AgentManager
from conductor.approvals import ApprovalRouter
from conductor.backends import CliAgentAdapter
from conductor.backends.base import BackendProcessError
from conductor.bridge import ApprovalBridge
from conductor.config import ConductorConfig
from conductor.engine import WorkflowEngine
from conductor.errors import ConductorError
from conductor.events import (
    AgentStatusChanged,
    AgentTurnEnded,
    ApprovalCreated,
    ApprovalResolved,
    EscalationRequested,
    EventBus,
)
from conductor.models import TERMINAL_AGENT_STATUSES, Agent, Approval, Decision, Session, utcnow_iso
from conductor.state.content import LocalContentStore
from conductor.state.store import FileStore, Store
from conductor.worktree import WorktreeManager

IDLE_SUMMARY = "Agent finished its turn — waiting for your input or a nudge to complete."
AUTO_RESOLVED = "Auto-resolved: agent exited"


@dataclass(slots=True)
class Services:
    """All long-lived components of one orchestrator process."""

    config: ConductorConfig
    store: Store
    content: LocalContentStore
    bus: EventBus
    bridge: ApprovalBridge
    approvals: ApprovalRouter
    agents: AgentManager
    worktrees: WorktreeManager
    engine: WorkflowEngine

    def wire(self) -> None:
        self.bus.subscribe(EscalationRequested, self._on_escalation)
        self.bus.subscribe(AgentTurnEnded, self._on_turn_ended)
        self.bus.subscribe(ApprovalCreated, self._on_approval_created)
        self.bus.subscribe(AgentStatusChanged, self._on_agent_status)
        self.bus.subscribe(ApprovalResolved, self._on_approval_resolved)

    async def start(self) -> None:
        await self.bridge.start()
        recovered = await self.engine.recover_sessions()
        if recovered:
            logger.info(f"Recovered {len(recovered)} session(s)")

    async def stop(self) -> None:
        await self.bridge.stop()
        await self.agents.shutdown()

    async def _on_escalation(self, event: EscalationRequested) -> None:
        await self.approvals.create_approval(
            event.session_id,
            "escalation",
            event.summary,
            payload=event.payload,
            agent_id=event.agent_id,
        )

    async def _on_turn_ended(self, event: AgentTurnEnded) -> None:
        await self.approvals.create_approval(
            event.session_id, "agent_idle", IDLE_SUMMARY, agent_id=event.agent_id
        )
        await self.engine.set_session_status(event.session_id, "waiting_approval")

    async def _on_approval_created(self, event: ApprovalCreated) -> None:
        if event.approval.type != "needs_input":
            return
        session = await self.store.get(Session, event.approval.session_id)
        if session is not None and session.status == "active":
            await self.engine.set_session_status(session.id, "waiting_approval")

    async def _on_agent_status(self, event: AgentStatusChanged) -> None:
        if event.status not in TERMINAL_AGENT_STATUSES:
            return
        stale = await self.store.select(
            Approval,
            agent_id=event.agent_id,
            status="pending",
            type={"agent_idle", "needs_input"},
        )
        for approval in stale:
            await self.store.update(
                Approval,
                approval.id,
                expect={"status": "pending"},
                status="approved",
                response=AUTO_RESOLVED,
                resolved_by="system",
                resolved_at=utcnow_iso(),
            )
            logger.info(f"Auto-resolved {approval.type} approval {approval.id}")

    async def _on_approval_resolved(self, event: ApprovalResolved) -> None:
        approval = event.approval
        if approval.type == "phase_gate":
            await self.engine.handle_approval_resolved(approval.id)
        elif approval.type == "escalation":
            await self.agents.handle_escalation_resolution(approval)
        elif approval.type == "decision":
            await self._resolve_decision(approval)
        else:
            await self._resolve_idle(approval)

    async def _tell_agent(self, agent_id: str, text: str) -> None:
        try:
            await self.agents.send_input(agent_id, text)
        except (ConductorError, BackendProcessError) as exc:
            await self.bus.report("services", exc, agent_id=agent_id)

    async def _resolve_decision(self, approval: Approval) -> None:
        decision_id = approval.payload_dict().get("decision_id")
        decision = await self.store.get(Decision, str(decision_id)) if decision_id else None
        if approval.status == "rejected" and decision is not None:
            await self.store.update(Decision, decision.id, status="invalidated")
        if not approval.agent_id:
            return
        question = decision.question if decision is not None else approval.summary
        text = f'Decision {approval.status}: "{question}"'
        if approval.response:
            text += f"\n{approval.response}"
        await self._tell_agent(approval.agent_id, text)

    async def _resolve_idle(self, approval: Approval) -> None:
        if not approval.agent_id or approval.resolved_by == "system":
            return
        agent = await self.store.get(Agent, approval.agent_id)
        if agent is None:
            return
        if approval.status == "approved":
            if agent.status != "waiting":
                return
            await self._tell_agent(agent.id, approval.response or PLACEHOLDER_INPUT)
            session = await self.store.get(Session, approval.session_id)
            if session is not None and session.status == "waiting_approval":
                await self.engine.set_session_status(session.id, "active")
            return
        await self.agents.kill_agent(agent.id)
        session = await self.store.get(Session, approval.session_id)
        if session is not None and session.status != "completed":
            await self.engine.set_session_status(session.id, "paused")


def build_services(
    config: ConductorConfig,
    *,
    store: Store | None = None,
    content: LocalContentStore | None = None,
    adapters: dict[str, CliAgentAdapter] | None = None,
) -> Services:
    storage = config.storage
    store = store if store is not None else FileStore(storage.state_dir)
    content = content if content is not None else LocalContentStore(storage.content_dir)
    bus = EventBus()
    bridge = ApprovalBridge(store, bus, poll_seconds=config.bridge.poll_seconds)
    approvals = ApprovalRouter(store, bus, bridge)
    agents = AgentManager(store, content, bus, config, adapters=adapters)
    worktrees = WorktreeManager(storage.worktrees_dir, branch_prefix=config.engine.branch_prefix)
    engine = WorkflowEngine(store, content, bus, agents, approvals, worktrees, config)
    services = Services(
        config=config,
        store=store,
        content=content,
        bus=bus,
        bridge=bridge,
        approvals=approvals,
        agents=agents,
        worktrees=worktrees,
        engine=engine,
    )
    services.wire()
    return services
