"""MCP tool server that spawned agents call back into.

Run with:
    conductor tool-server

The agent manager launches one server per agent, passing the data
directory and the agent, session and phase ids through the environment.
The server writes straight into the shared state directory; the
orchestrator notices the changes through the approval bridge and the
agent's own result event.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from mcp.server.fastmcp import FastMCP

from conductor.errors import PreconditionError
from conductor.models import (
    LIVE_AGENT_STATUSES,
    TERMINAL_AGENT_STATUSES,
    Agent,
    Approval,
    Artifact,
    Decision,
    new_id,
    utcnow_iso,
)
from conductor.state.content import LocalContentStore
from conductor.state.store import FileStore, Store

PhaseStatus = Literal["complete", "iterate", "blocked", "needs_input"]

_UNSAFE_ARTIFACT_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def artifact_key(session_id: str, name: str) -> str:
    return f"sessions/{session_id}/artifacts/{_UNSAFE_ARTIFACT_CHARS.sub('_', name)}.md"


class PhaseTools:
    """Tool implementations bound to one agent of one session phase."""

    def __init__(
        self,
        store: Store,
        content: LocalContentStore,
        *,
        agent_id: str,
        session_id: str,
        phase_id: str,
    ) -> None:
        self.store = store
        self.content = content
        self.agent_id = agent_id
        self.session_id = session_id
        self.phase_id = phase_id

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> PhaseTools:
        env = dict(os.environ if env is None else env)
        missing = [
            name
            for name in (
                "CONDUCTOR_DATA_DIR",
                "CONDUCTOR_AGENT_ID",
                "CONDUCTOR_SESSION_ID",
                "CONDUCTOR_PHASE_ID",
            )
            if not env.get(name)
        ]
        if missing:
            raise PreconditionError(f"Tool server environment is missing {', '.join(missing)}")
        data_dir = Path(env["CONDUCTOR_DATA_DIR"]).expanduser()
        return cls(
            FileStore(data_dir / "state"),
            LocalContentStore(data_dir / "content"),
            agent_id=env["CONDUCTOR_AGENT_ID"],
            session_id=env["CONDUCTOR_SESSION_ID"],
            phase_id=env["CONDUCTOR_PHASE_ID"],
        )

    @staticmethod
    def _already_finished(status: str) -> str:
        return json.dumps({"status": status, "message": "Agent already finished; nothing changed."})

    async def _finished_meanwhile(self) -> str:
        agent = await self.store.get(Agent, self.agent_id)
        return self._already_finished(agent.status if agent is not None else "failed")

    async def phase_complete(self, summary: str, status: PhaseStatus = "complete") -> str:
        agent = await self.store.get(Agent, self.agent_id)
        if agent is None:
            return json.dumps({"status": "error", "message": "Unknown agent"})
        if agent.status in TERMINAL_AGENT_STATUSES:
            return self._already_finished(agent.status)

        live = {"status": set(LIVE_AGENT_STATUSES)}
        if status in ("complete", "iterate"):
            updated = await self.store.update(
                Agent,
                self.agent_id,
                expect=live,
                status="completed",
                completion_signal=status,
                phase_summary=summary,
                completed_at=utcnow_iso(),
            )
            if updated is None:
                return await self._finished_meanwhile()
            logger.info(f"Agent {self.agent_id} signalled {status}")
            verb = "complete" if status == "complete" else "complete; requested another iteration"
            return json.dumps(
                {"status": "completed", "message": f"Phase marked as {verb}. Summary: {summary}"}
            )

        updated = await self.store.update(
            Agent, self.agent_id, expect=live, status="waiting", phase_summary=summary
        )
        if updated is None:
            return await self._finished_meanwhile()
        if status == "blocked":
            return json.dumps({"status": "blocked", "message": f"Phase blocked: {summary}"})

        approval = Approval(
            id=new_id(),
            session_id=self.session_id,
            agent_id=self.agent_id,
            type="needs_input",
            summary=summary,
        )
        await self.store.insert(approval)
        return json.dumps(
            {
                "status": "needs_input",
                "message": f"Waiting for input: {summary}",
                "approval_id": approval.id,
            }
        )

    async def artifact(self, name: str, content: str, final: bool = False) -> str:
        key = artifact_key(self.session_id, name)
        await self.content.write(key, content)
        status = "final" if final else "draft"
        existing = await self.store.first(Artifact, session_id=self.session_id, name=name)
        if existing is None:
            row = Artifact(
                id=new_id(),
                session_id=self.session_id,
                phase_id=self.phase_id,
                agent_id=self.agent_id,
                name=name,
                file_path=key,
                status=status,
            )
            await self.store.insert(row)
            artifact_id = row.id
        else:
            await self.store.update(
                Artifact,
                existing.id,
                phase_id=self.phase_id,
                agent_id=self.agent_id,
                file_path=key,
                status=status,
                updated_at=utcnow_iso(),
            )
            artifact_id = existing.id
        return json.dumps(
            {
                "artifact_id": artifact_id,
                "file_path": key,
                "status": status,
                "message": f'Artifact "{name}" written to {key}',
            }
        )

    async def _insert_decision(
        self,
        question: str,
        choice: str,
        rationale: str | None,
        alternatives: list[str] | None,
        tags: list[str] | None,
    ) -> Decision:
        decision = Decision(
            id=new_id(),
            session_id=self.session_id,
            agent_id=self.agent_id,
            question=question,
            choice=choice,
            rationale=rationale,
            alternatives=list(alternatives or []),
            tags=list(tags or []),
        )
        await self.store.insert(decision)
        return decision

    async def record(
        self,
        question: str,
        choice: str,
        rationale: str | None = None,
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> str:
        decision = await self._insert_decision(question, choice, rationale, alternatives, tags)
        return json.dumps(
            {"decision_id": decision.id, "status": "stored", "message": f"Recorded: {question}"}
        )

    async def decide(
        self,
        question: str,
        choice: str,
        rationale: str | None = None,
        alternatives: list[str] | None = None,
    ) -> str:
        decision = await self._insert_decision(question, choice, rationale, alternatives, None)
        payload: dict[str, Any] = {
            "decision_id": decision.id,
            "question": question,
            "choice": choice,
            "rationale": rationale,
            "alternatives": decision.alternatives,
        }
        approval = Approval(
            id=new_id(),
            session_id=self.session_id,
            agent_id=self.agent_id,
            type="decision",
            summary=f"Decision: {question} -> {choice}",
            payload=json.dumps(payload),
        )
        await self.store.insert(approval)
        return json.dumps(
            {
                "decision_id": decision.id,
                "approval_id": approval.id,
                "status": "pending_approval",
                "message": f"Decision proposed and queued for human review: {question}",
            }
        )

    async def context(self, query: str | None = None) -> str:
        decisions = await self.store.select(
            Decision, descending=True, session_id=self.session_id, status="active"
        )
        if query:
            needle = query.lower()
            decisions = [
                d
                for d in decisions
                if needle in d.question.lower()
                or needle in d.choice.lower()
                or any(needle in tag.lower() for tag in d.tags)
            ]
        artifacts = await self.store.select(Artifact, descending=True, session_id=self.session_id)

        lines: list[str] = []
        if decisions:
            lines.append("## Active Decisions\n")
            for decision in decisions:
                lines.append(f"### {decision.question}")
                lines.append(f"**Choice:** {decision.choice}")
                if decision.rationale:
                    lines.append(f"**Rationale:** {decision.rationale}")
                if decision.alternatives:
                    lines.append(f"**Alternatives:** {', '.join(decision.alternatives)}")
                if decision.tags:
                    lines.append(f"**Tags:** {', '.join(decision.tags)}")
                lines.append("")
        if artifacts:
            lines.append("## Session Artifacts\n")
            for artifact in artifacts:
                lines.append(f"- **{artifact.name}** ({artifact.status}): {artifact.file_path}")
        if not lines:
            return "No relevant context found yet: no decisions or artifacts in this session."
        return "\n".join(lines)


def build_server(tools: PhaseTools, name: str = "conductor") -> FastMCP:
    server = FastMCP(name)

    @server.tool()
    async def conductor_phase_complete(summary: str, status: PhaseStatus = "complete") -> str:
        """Signal the end of the current phase.

        Use ``complete`` when the work is done, ``iterate`` to ask for another
        loop iteration, ``blocked`` when you cannot continue, and
        ``needs_input`` when a human has to answer something first.
        """
        return await tools.phase_complete(summary, status)

    @server.tool()
    async def conductor_artifact(name: str, content: str, final: bool = False) -> str:
        """Write or overwrite a named markdown artifact for later phases."""
        return await tools.artifact(name, content, final)

    @server.tool()
    async def conductor_record(
        question: str,
        choice: str,
        rationale: str | None = None,
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """Record a decision or finding that needs no human confirmation."""
        return await tools.record(question, choice, rationale, alternatives, tags)

    @server.tool()
    async def conductor_decide(
        question: str,
        choice: str,
        rationale: str | None = None,
        alternatives: list[str] | None = None,
    ) -> str:
        """Propose a decision and queue it for human confirmation."""
        return await tools.decide(question, choice, rationale, alternatives)

    @server.tool()
    async def conductor_context(query: str | None = None) -> str:
        """Look up the session's active decisions and artifacts."""
        return await tools.context(query)

    return server


def run(name: str = "conductor") -> None:
    tools = PhaseTools.from_env()
    logger.info(f"Tool server {name} serving agent {tools.agent_id}")
    build_server(tools, name).run(transport="stdio")
